"""
GoalSync - Session and realtime core.
"""

__version__ = "0.1.0"
