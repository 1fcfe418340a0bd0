"""pdp_gateway.credentials

Instance-profile credentials and the region-scoped control plane clients built
from them.

State lives in a single immutable ``ClientSnapshot``. Writers build a new
snapshot under ``_lock`` and publish it with one attribute assignment; readers
never lock, so a reader always sees credentials and clients that belong
together (never region A's credentials with region B's clients).

A caller that had to wait for the lock re-checks the published snapshot
before rebuilding, so a burst of requests hitting an expired or wrong-region
snapshot triggers one rebuild, not one per request.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import PDP_E_CREDENTIALS_INVALID, DependencyError
from .metadata import InstanceMetadataClient
from .metrics import record_credential_refresh

logger = logging.getLogger("pdp_gateway")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CredentialState:
    region: str
    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return (now or _utcnow()) + timedelta(seconds=seconds) >= expires_at


@dataclass(frozen=True)
class ClientSnapshot:
    credentials: CredentialState
    ec2: Any
    iam: Any
    version: int


ClientFactory = Callable[[CredentialState], Tuple[Any, Any]]


def boto3_clients(credentials: CredentialState) -> Tuple[Any, Any]:
    """(ec2, iam) clients bound to ``credentials`` and its region."""
    session = boto3.session.Session(
        aws_access_key_id=credentials.access_key_id,
        aws_secret_access_key=credentials.secret_access_key,
        aws_session_token=credentials.session_token,
        region_name=credentials.region,
    )
    return session.client("ec2"), session.client("iam")


class CredentialRotator:
    """Owns the current ``ClientSnapshot`` and rebuilds it on demand.

    Nothing is fetched until the first call; a gateway that never sees an
    attested request never touches the metadata service.
    """

    def __init__(
        self,
        metadata: InstanceMetadataClient,
        *,
        client_factory: ClientFactory = boto3_clients,
        refresh_margin_s: float = 300,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.metadata = metadata
        self.client_factory = client_factory
        self.refresh_margin_s = float(refresh_margin_s)
        self.clock = clock
        self._lock = threading.Lock()
        self._snapshot: Optional[ClientSnapshot] = None

    def snapshot(self) -> ClientSnapshot:
        """Current snapshot, rebuilt first if missing or about to expire."""
        snap = self._snapshot
        if snap is not None and not self._expiring(snap):
            return snap
        return self._rebuild(None, "initial" if snap is None else "expiry")

    def current_credentials(self) -> CredentialState:
        return self.snapshot().credentials

    def for_region(self, region: str) -> ClientSnapshot:
        """Snapshot whose clients are bound to ``region``."""
        snap = self._snapshot
        if snap is not None and snap.credentials.region == region and not self._expiring(snap):
            return snap
        return self._rebuild(region, "initial" if snap is None else "region")

    def refresh(self, region: Optional[str] = None) -> CredentialState:
        """Force a rebuild; coalesces with a rebuild that finished while waiting."""
        seen = self._snapshot
        return self._rebuild(region, "forced", seen=seen, force=True).credentials

    def _expiring(self, snap: ClientSnapshot) -> bool:
        return snap.credentials.expires_within(self.refresh_margin_s, now=self.clock())

    def _usable(self, snap: Optional[ClientSnapshot], region: Optional[str]) -> bool:
        if snap is None or self._expiring(snap):
            return False
        return region is None or snap.credentials.region == region

    def _rebuild(
        self,
        region: Optional[str],
        reason: str,
        *,
        seen: Optional[ClientSnapshot] = None,
        force: bool = False,
    ) -> ClientSnapshot:
        with self._lock:
            current = self._snapshot
            if force:
                if current is not seen and self._usable(current, region):
                    return current
            elif self._usable(current, region):
                return current

            target = region or (current.credentials.region if current is not None else None)
            if target is None:
                target = self.metadata.identity_document().region

            creds = self.metadata.security_credentials()
            state = CredentialState(
                region=target,
                access_key_id=creds.access_key_id,
                secret_access_key=creds.secret_access_key,
                session_token=creds.token,
                expires_at=creds.expiration,
            )
            try:
                ec2, iam = self.client_factory(state)
            except (BotoCoreError, ClientError, ValueError) as e:
                raise DependencyError(
                    code=PDP_E_CREDENTIALS_INVALID,
                    message=f"Could not build cloud clients for region {target}",
                    details={"region": target, "error": str(e)},
                ) from e

            snap = ClientSnapshot(
                credentials=state,
                ec2=ec2,
                iam=iam,
                version=(current.version + 1) if current is not None else 1,
            )
            self._snapshot = snap

        record_credential_refresh(reason)
        logger.info(
            "Rebuilt cloud clients for region %s (reason=%s, version=%d, expires_at=%s)",
            target, reason, snap.version, state.expires_at,
        )
        return snap
