"""
output: clipboard export of matches and transformed text.
"""
