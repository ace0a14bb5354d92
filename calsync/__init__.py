"""Calendar synchronization engine for construction scheduling"""
