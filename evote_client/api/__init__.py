"""Election authority HTTP boundary"""
