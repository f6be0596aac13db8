"""
Verification orchestration and command line entry point for MedVerify.
"""
