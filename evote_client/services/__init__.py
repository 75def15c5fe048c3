"""Protocol services"""
