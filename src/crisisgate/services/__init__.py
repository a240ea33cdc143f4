"""
Services for CrisisGate
"""
