"""
Newsletter campaign delivery engine: scheduling, recurrence and A/B test rollout
"""

__version__ = "1.0.0"
