"""
GM Tea event indexer.

Ingests check-in, badge, username, referral and reward events from the Tea
chain and keeps the points, rank and badge projections consistent with them.
"""

__version__ = "0.1.0"
