"""
Base Workflow Classes for the IAM Reconciler.

This module provides the foundation for reconciliation workflows: step
tracking, audit logging and the shared connector.
"""

import logging
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..audit.audit_logger import AuditLogger
from ..config import ReconcilerSettings
from ..connectors import BaseConnector, create_connector
from ..models import AuditRecord

logger = logging.getLogger(__name__)


class WorkflowStep:
    """One remote operation against an account, optionally on behalf of a role."""

    def __init__(self, operation: str, account: str, resource: str = "",
                 role: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        self.account = account
        self.resource = resource
        self.role = role
        self.details = details or {}
        self.finished_at: Optional[datetime] = None
        self.duration: Optional[float] = None
        self.success = False
        self.error: Optional[str] = None
        self.result: Any = None

    def finish(self, result: Any = None, error: Optional[str] = None,
               duration: Optional[float] = None):
        """Close the step; a step with an error is a failure."""
        self.finished_at = datetime.now(timezone.utc)
        self.duration = duration
        self.success = error is None
        self.error = error
        self.result = result

    @property
    def label(self) -> str:
        return f"{self.operation}({self.resource})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "account": self.account,
            "role": self.role,
            "resource": self.resource,
            "details": self.details,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration": self.duration,
            "success": self.success,
            "error": self.error,
            "result": self.result,
        }


class BaseWorkflow(ABC):
    """
    Abstract base class for reconciliation workflows.

    Every remote operation runs through _run_step(), which records it as a
    WorkflowStep, writes an audit record and lets failures propagate.
    """

    def __init__(self, settings: Optional[ReconcilerSettings] = None,
                 connector: Optional[BaseConnector] = None,
                 audit_logger: Optional[AuditLogger] = None):
        """
        Initialize the workflow.

        Args:
            settings: Reconciler settings; defaults when omitted
            connector: Backend to reconcile against; built from settings when omitted
            audit_logger: Audit sink; built from settings.audit_dir when omitted
        """
        self.settings = settings or ReconcilerSettings()
        self.workflow_id = uuid.uuid4().hex
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self.steps: List[WorkflowStep] = []
        self.errors: List[str] = []

        self.connector = connector or create_connector(
            self.settings.connector_config("aws"), mock_mode=self.settings.mock_mode
        )
        self.audit_logger = audit_logger or AuditLogger(self.settings.audit_dir)

        logger.info(f"{self.__class__.__name__} {self.workflow_id} using "
                    f"{self.connector.__class__.__name__}")

    @abstractmethod
    def execute(self, *args, **kwargs) -> Any:
        """Run the workflow."""
        pass

    def _run_step(self, step: WorkflowStep, action: Callable[[], Any]) -> Any:
        """
        Execute a step, record it and audit it.

        Exceptions are recorded on the step and re-raised unchanged.
        """
        self.steps.append(step)
        started = time.monotonic()
        try:
            result = action()
        except Exception as e:
            step.finish(error=str(e), duration=time.monotonic() - started)
            self.errors.append(f"{step.label}: {e}")
            self._audit(step)
            raise

        step.finish(result=self._describe(result), duration=time.monotonic() - started)
        logger.debug(f"{step.label} done in {step.duration:.2f}s")
        self._audit(step)
        return result

    def _record_failure(self, step: WorkflowStep, error: str):
        """Record a non-fatal failure without interrupting the workflow."""
        step.finish(error=error)
        self.steps.append(step)
        self.errors.append(f"{step.label}: {error}")
        self._audit(step)

    @staticmethod
    def _describe(result: Any) -> Any:
        if hasattr(result, "model_dump"):
            return result.model_dump(mode="json")
        return result

    def _audit(self, step: WorkflowStep) -> str:
        record = AuditRecord(
            id=uuid.uuid4().hex,
            workflow_id=self.workflow_id,
            account=step.account,
            role=step.role,
            action=step.operation,
            resource=step.resource,
            success=step.success,
            error_message=step.error,
            metadata=step.details,
        )
        return self.audit_logger.log_event(record)

    def get_execution_summary(self) -> Dict[str, Any]:
        """Counts of steps per account, and every error seen, for the whole run."""
        per_account: Dict[str, Dict[str, int]] = {}
        for step in self.steps:
            counts = per_account.setdefault(step.account, {"succeeded": 0, "failed": 0})
            counts["succeeded" if step.success else "failed"] += 1

        return {
            "workflow_id": self.workflow_id,
            "workflow_type": self.__class__.__name__,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "accounts": per_account,
            "failed_steps": sum(c["failed"] for c in per_account.values()),
            "errors": list(self.errors),
        }
