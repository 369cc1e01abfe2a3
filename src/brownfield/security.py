"""Identity and audit trail for tenant governance writes.

A reconciliation run can delete policy assignments and role assignments at
the root management group, so it authenticates as a managed identity and
nothing else. Secret-bearing Azure variables in the environment stop the
run before a credential is built.

Each write through the Azure adapter leaves one audit log record, so the
mutations of a run can be matched against its provenance record.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Read by EnvironmentCredential; any of them means a secret is in reach
SECRET_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

# Selects a user-assigned identity
IDENTITY_CLIENT_ID_ENV_VAR = "AZURE_CLIENT_ID"

# Roles the identity needs on the root management group
REQUIRED_ROOT_ROLES: tuple[str, ...] = (
    "Management Group Contributor",
    "Resource Policy Contributor",
    "User Access Administrator",
)


class SecretCredentialError(Exception):
    """A secret-based Azure credential is configured in the environment."""

    def __init__(self, env_vars: list[str]) -> None:
        self.env_vars = env_vars
        super().__init__(
            f"Secret-based credential configured via {', '.join(env_vars)}. "
            "Unset it and run as a managed identity holding "
            f"{', '.join(REQUIRED_ROOT_ROLES)} on the root management group."
        )


def secret_credential_vars(environ: Mapping[str, str] | None = None) -> list[str]:
    """Names of the secret-bearing variables set to a non-empty value."""
    env = os.environ if environ is None else environ
    return [name for name in SECRET_CREDENTIAL_ENV_VARS if env.get(name)]


def require_secretless(environ: Mapping[str, str] | None = None) -> None:
    """Raise SecretCredentialError naming every secret-bearing variable that is set."""
    found = secret_credential_vars(environ)
    if found:
        logger.critical(
            "Refusing to run with a secret credential",
            extra={"security_event": "secret_credential_detected", "env_vars": found},
        )
        raise SecretCredentialError(found)


def managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Credential for the Azure adapter.

    ``client_id`` (or ``AZURE_CLIENT_ID``) picks a user-assigned identity;
    without one the system-assigned identity is used.

    Raises:
        SecretCredentialError: If a secret-bearing variable is set.
    """
    require_secretless()

    client_id = client_id or os.environ.get(IDENTITY_CLIENT_ID_ENV_VAR) or None
    if client_id is None:
        logger.info("Authenticating as system-assigned identity")
        return ManagedIdentityCredential()

    logger.info(
        "Authenticating as user-assigned identity",
        extra={"client_id": f"{client_id[:8]}..." if len(client_id) > 8 else client_id},
    )
    return ManagedIdentityCredential(client_id=client_id)


def audit_mutation(
    operation: str, target: str, outcome: str, error_kind: str | None = None
) -> None:
    logger.info(
        "Control plane mutation",
        extra={
            "audit": True,
            "operation": operation,
            "target": target,
            "outcome": outcome,
            "error_kind": error_kind,
        },
    )
