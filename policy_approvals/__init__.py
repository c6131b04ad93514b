"""
Policy Approval Workflow Engine

Multi-stage approval workflows for policy documents with delegation,
pluggable stage completion rules, and a periodic escalation sweep.
"""

__version__ = "1.0.0"
