"""
Anonymous Voting Client
Identity, OTP and blind-signature vote casting against an election authority
"""

__version__ = "1.0.0"
