"""
MedVerify - Medical License Verification Engine

Confirms that a person registering as a physician holds a genuine, currently
valid medical license by querying the official professional registry through
browser automation and reconciling profession, specialty and identity.
"""

__version__ = "1.0.0"
__author__ = "MedVerify Team"
