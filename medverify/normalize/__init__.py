"""
Input normalization modules for MedVerify.

Handles canonical document numbers and case/diacritic folding of names and
registry text so that cache keys and comparisons are stable.
"""
