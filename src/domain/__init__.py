"""
Domain layer for the calendar invite bot.

This layer contains:
- Configuration and data models
- Sender filtering rules
- The stage runner and the pipeline stages
- The invite processor used by the Lambda handler
"""
