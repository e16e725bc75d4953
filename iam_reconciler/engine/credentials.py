"""
Credential Manager for the IAM Reconciler.

Holds the credential context of the currently assumed enacting role and
hands it to the connector. A single manager owns the context; it is always
cleared before a new one is installed.
"""

import logging
from typing import Optional

from ..connectors import BaseConnector
from ..exceptions import NoIdentityError, RoleSwitchError
from ..models import CredentialContext, Identity

logger = logging.getLogger(__name__)


class CredentialManager:
    """Single owner of the active credential context."""

    def __init__(self, connector: BaseConnector):
        self.connector = connector
        self.context: Optional[CredentialContext] = None

    def clear(self):
        """Unset every identity field of the held context."""
        if self.context is not None:
            logger.debug(f"Clearing credentials for {self.context.assumed_role_arn}")
        self.context = None
        self.connector.clear_credentials()

    def assume_role(self, role_arn: str, session_name: str, region: str,
                    duration_seconds: int = 3600) -> CredentialContext:
        """
        Switch to a new role.

        Args:
            role_arn: ARN of the enacting role
            session_name: Session name recorded by the backend
            region: Region for the identity call and the returned context
            duration_seconds: Lifetime of the temporary credentials

        Returns:
            The newly installed CredentialContext

        Raises:
            RoleSwitchError: if the backend returned no credentials
        """
        self.clear()

        result = self.connector.assume_role(role_arn, session_name, region, duration_seconds)
        if not result.success or result.data is None:
            logger.error(f"Role switch to {role_arn} failed: {result.error or result.message}")
            raise RoleSwitchError(role_arn, result.error)

        self.context = result.data
        self.connector.set_credentials(self.context)
        logger.info(f"Switched to role {role_arn}")
        return self.context

    def current_identity(self, region: str) -> Identity:
        """
        Return the identity remote calls currently run as.

        Raises:
            NoIdentityError: if the session is missing or expired
        """
        if self.context is not None and self.context.is_expired():
            raise NoIdentityError(
                f"Session for {self.context.assumed_role_arn} expired at {self.context.expiration}"
            )

        result = self.connector.get_caller_identity(region)
        if not result.success or result.data is None:
            raise NoIdentityError(f"No valid session available: {result.error or result.message}")
        return result.data
