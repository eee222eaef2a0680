"""
LangGraph Workflows

Classification and draft pipelines plus the worker pool that runs them.
"""

from helpdesk_ai.workflows.classification_workflow import ClassificationWorkflow
from helpdesk_ai.workflows.draft_workflow import DraftWorkflow
from helpdesk_ai.workflows.job_runner import JobRunner

__all__ = ["ClassificationWorkflow", "DraftWorkflow", "JobRunner"]
