"""Environment migrator configuration"""
