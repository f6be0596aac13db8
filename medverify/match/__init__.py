"""
Identity matching for MedVerify.

Scores registry names against the claimed identity of the registrant.
"""
