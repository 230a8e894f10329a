"""
Renovate Operator - runs Renovate across discovered projects on a cron schedule.
"""
__version__ = "0.1.0"
