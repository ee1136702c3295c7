"""BookFlow billing service"""
