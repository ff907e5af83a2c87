"""
FHIR resource storage and search
"""
