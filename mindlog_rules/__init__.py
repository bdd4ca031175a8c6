"""MindLog clinical rules engine: rule evaluation, alerting and risk scoring"""

__version__ = "1.0.0"
