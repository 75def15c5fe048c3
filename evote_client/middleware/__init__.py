"""Client-side request guards"""
