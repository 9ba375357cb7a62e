"""
regexlab: ordered regex rewrite chains with an on-device rule generator.

Text + ordered stages -> collected matches + rewritten text, with an optional
local language model that turns a plain-English description into a pattern.
"""

__version__ = "1.0.0"
__author__ = "regexlab team"
