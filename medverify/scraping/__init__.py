"""
Registry navigation and result parsing for MedVerify.
"""
