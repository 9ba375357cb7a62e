"""
storage: key-value store adapters and the saved-rule / workspace libraries.
"""
