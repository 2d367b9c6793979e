"""Login-only connection check for integration settings."""

import asyncio
import logging
from typing import Optional

from src.core.settings import settings

from .exceptions import CrmAuthError, CrmNetworkError
from .models import Integration, TestConnectionResult
from .session import CredentialSessionManager

logger = logging.getLogger(__name__)


class ConnectionTester:
    """
    Validates credentials and URLs by running the login handshake only.

    Never touches the create-invoice endpoint, so a test has no side effects
    on the remote system.
    """

    def __init__(
        self,
        session_manager: Optional[CredentialSessionManager] = None,
        timeout: Optional[float] = None,
    ):
        self.session_manager = session_manager or CredentialSessionManager()
        self.timeout = timeout if timeout is not None else settings.CRM_TEST_TIMEOUT

    async def test(self, integration: Integration) -> TestConnectionResult:
        """Attempt a login and describe the outcome.

        Never raises for remote failures.
        """
        try:
            session = await asyncio.wait_for(
                self.session_manager.authenticate(integration), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            message = (
                f"Timed out after {self.timeout:g}s connecting to "
                f"{integration.loginUrl}"
            )
            return self._failed(integration, message)
        except CrmNetworkError as e:
            return self._failed(integration, e.message)
        except CrmAuthError as e:
            if e.reason == CrmAuthError.HTTP_STATUS:
                message = f"Login failed with HTTP {e.remote_status}"
            else:
                message = e.message
            return self._failed(integration, message, e.message)

        logger.info(
            f"Connection test passed for CRM integration {integration.id} "
            f"({len(session.cookies)} cookies)"
        )
        return TestConnectionResult(
            success=True,
            message=f"Connected to {integration.name} successfully",
        )

    def _failed(
        self, integration: Integration, message: str, error: Optional[str] = None
    ) -> TestConnectionResult:
        logger.info(
            f"Connection test failed for CRM integration {integration.id}: {message}"
        )
        return TestConnectionResult(
            success=False, message=message, error=error or message
        )
