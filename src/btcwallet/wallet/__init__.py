"""
Key derivation, transaction construction and payment logic.
"""
