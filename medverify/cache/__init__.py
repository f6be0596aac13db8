"""
Verification result cache for MedVerify.
"""
