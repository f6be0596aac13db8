"""
Audit trail for MedVerify verifications.
"""
