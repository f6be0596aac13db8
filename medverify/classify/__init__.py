"""
Profession and specialty classification for MedVerify.

Maps free-text registry professions and specialties onto a versioned table
and decides physician eligibility.
"""
