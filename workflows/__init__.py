"""Workflow definitions module."""

from workflows.event_workflow import EventProcessingWorkflow, EventWorkflowInput, EventWorkflowOutput

__all__ = ["EventProcessingWorkflow", "EventWorkflowInput", "EventWorkflowOutput"]
