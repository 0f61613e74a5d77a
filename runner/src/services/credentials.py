"""
Credential store accessors and log redaction.

Secrets are fetched at step start, injected into that step's environment
only, and registered with the run's Redactor so that captured output is
masked before it is logged, stored or sent anywhere.
"""

import logging
import os
import threading
from typing import Dict, Iterable, List, Optional

import yaml

from runner.src.config import get_settings
from runner.src.errors import CredentialError
from runner.src.models.pipeline import CredentialRef

logger = logging.getLogger(__name__)

MASK = "****"

class Redactor:
    """Masks registered secret values in text."""

    def __init__(self):
        self._secrets: set = set()
        self._lock = threading.Lock()

    def register(self, secret: str):
        if secret:
            with self._lock:
                self._secrets.add(secret)

    def redact(self, text: Optional[str]) -> str:
        if not text:
            return text or ""
        with self._lock:
            # Longest first so a secret containing another is masked whole
            secrets = sorted(self._secrets, key=len, reverse=True)
        for secret in secrets:
            text = text.replace(secret, MASK)
        return text

    def __len__(self) -> int:
        return len(self._secrets)

    def __repr__(self) -> str:
        return f"Redactor(<{len(self)} secrets>)"


class CredentialStore:
    """Resolves a credential reference to its secret value."""

    def fetch(self, ref: CredentialRef) -> str:
        raise NotImplementedError


class EnvCredentialStore(CredentialStore):
    """Reads secrets from CONVEYOR_CREDENTIAL_<ID> environment variables."""

    def __init__(self, prefix: str = "CONVEYOR_CREDENTIAL_", environ: Optional[Dict[str, str]] = None):
        self.prefix = prefix
        self.environ = os.environ if environ is None else environ

    def variable_name(self, credential_id: str) -> str:
        return self.prefix + credential_id.upper().replace("-", "_").replace(".", "_")

    def fetch(self, ref: CredentialRef) -> str:
        value = self.environ.get(self.variable_name(ref.id))
        if value is None:
            raise CredentialError(ref.id)
        return value


class FileCredentialStore(CredentialStore):
    """Reads secrets from a YAML mapping of credential id to value."""

    def __init__(self, path: str):
        self.path = path

    def fetch(self, ref: CredentialRef) -> str:
        try:
            with open(self.path, "r") as f:
                secrets = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise CredentialError(ref.id, reason=f"credential store unreadable ({e.__class__.__name__})")

        if not isinstance(secrets, dict) or ref.id not in secrets:
            raise CredentialError(ref.id)
        value = secrets[ref.id]
        if not isinstance(value, str):
            raise CredentialError(ref.id, reason="credential is not a string")
        return value


class ChainCredentialStore(CredentialStore):
    """Tries each store in order and returns the first hit."""

    def __init__(self, stores: Iterable[CredentialStore]):
        self.stores: List[CredentialStore] = list(stores)

    def fetch(self, ref: CredentialRef) -> str:
        for store in self.stores:
            try:
                return store.fetch(ref)
            except CredentialError:
                continue
        raise CredentialError(ref.id)


def default_credential_store() -> CredentialStore:
    """Build the configured credential store chain."""
    settings = get_settings()
    stores: List[CredentialStore] = [EnvCredentialStore(settings.credential_env_prefix)]
    if settings.credentials_file:
        stores.append(FileCredentialStore(settings.credentials_file))
    return ChainCredentialStore(stores)


def fetch_step_credentials(
    refs: Iterable[CredentialRef],
    store: CredentialStore,
    redactor: Redactor,
) -> Dict[str, str]:
    """
    Fetch the secrets a step asked for and return them as env bindings.
    Every value is registered with the redactor before it is returned.
    """
    bindings = {}
    for ref in refs:
        value = store.fetch(ref)
        redactor.register(value)
        bindings[ref.env] = value
        logger.debug(f"Bound credential {ref.id} to ${ref.env}")
    return bindings
