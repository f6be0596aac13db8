"""
Browser session pooling for MedVerify.
"""
