"""Service layer for the Contao Manager console.

Provides token encryption, the site credential store, remote task
polling and the update workflow.
"""

from contao_console.services.manager_protocol import ManagerApi, ManagerApiError
from contao_console.services.poller import TaskPoller
from contao_console.services.site_store import (
    ConfigDocument,
    LoadResult,
    SiteCredentialStore,
    SiteRecord,
)
from contao_console.services.token_cipher import (
    DecryptionError,
    EncryptedSecret,
    TokenCipher,
)
from contao_console.services.workflow import (
    InvalidStepTransition,
    StepStatus,
    UpdateWorkflow,
    WorkflowConfig,
)

__all__ = [
    "ConfigDocument",
    "DecryptionError",
    "EncryptedSecret",
    "InvalidStepTransition",
    "LoadResult",
    "ManagerApi",
    "ManagerApiError",
    "SiteCredentialStore",
    "SiteRecord",
    "StepStatus",
    "TaskPoller",
    "TokenCipher",
    "UpdateWorkflow",
    "WorkflowConfig",
]
