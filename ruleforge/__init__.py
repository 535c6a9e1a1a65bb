"""
RuleForge - rule evolution engine for a conversational appeal assistant.

Scores finished conversations, correlates them with appeal outcomes and
promotes, demotes or retires the heuristic rules the assistant follows.
"""

__version__ = "0.3.0"
