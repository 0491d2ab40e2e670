"""Database and media host adapters"""
