"""
Helpdesk AI Classification & Routing Engine

Classifies inbound customer messages, routes conversations to agents and
drafts knowledge-grounded replies for human review.
"""

__version__ = "1.0.0"
