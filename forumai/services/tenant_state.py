from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forumai.core.config import get_settings
from forumai.core.errors import AuthError, ForumAIError, TransportError
from forumai.domain.models import PendingApprovalMarker, TenantAccount
from forumai.domain.state import ConnectionState, Plan, SubscriptionStatus
from forumai.persistence.repos import accounts as accounts_repo
from forumai.persistence.repos import items as items_repo
from forumai.persistence.repos import options as options_repo
from forumai.providers.remote.base import AccountService, AccountStatus, Registration
from forumai.services.credits import invalidate_credit_cache, prime_credit_cache
from forumai.services.crypto import decrypt_secret, encrypt_secret
from forumai.services.options import INDEXING_OPTION_KEYS


logger = logging.getLogger(__name__)

_LIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TenantCredentials:
    tenant_id: str
    api_key: str


@dataclass(frozen=True)
class StateDecision:
    state: ConnectionState
    # True when the pending marker must be removed in the same transaction.
    clear_marker: bool = False


@dataclass(frozen=True)
class StateResolution:
    state: ConnectionState
    status: AccountStatus | None = None
    error_code: str | None = None
    error_message: str | None = None
    marker_cleared: bool = False

    @property
    def operable(self) -> bool:
        return is_service_available(self.state)


def is_service_available(state: ConnectionState | str) -> bool:
    return ConnectionState(state).operable


def decide_state(
    *,
    has_credentials: bool,
    remote_status: AccountStatus | None,
    remote_error: Exception | None,
    marker_live: bool,
) -> StateDecision:
    """Map stored credentials, the remote status result and the pending marker to one state."""
    if not has_credentials:
        return StateDecision(ConnectionState.PENDING_APPROVAL if marker_live else ConnectionState.NOT_CONNECTED)

    if remote_error is not None or remote_status is None:
        return StateDecision(ConnectionState.PENDING_APPROVAL if marker_live else ConnectionState.ERROR)

    status = SubscriptionStatus.parse(remote_status.subscription_status)
    if status in _LIVE_STATUSES:
        # Activation supersedes the registration marker before anything reads it again.
        plan = Plan.parse(remote_status.plan)
        state = ConnectionState.FREE_TRIAL if plan == Plan.FREE_TRIAL else ConnectionState.PAID_PLAN
        return StateDecision(state, clear_marker=marker_live)
    if status == SubscriptionStatus.PENDING_APPROVAL:
        return StateDecision(ConnectionState.PENDING_APPROVAL)
    if status == SubscriptionStatus.INACTIVE:
        return StateDecision(ConnectionState.INACTIVE)
    if status == SubscriptionStatus.EXPIRED:
        return StateDecision(ConnectionState.EXPIRED)
    # Remote has not caught up with the registration yet.
    if marker_live:
        return StateDecision(ConnectionState.PENDING_APPROVAL)
    return StateDecision(ConnectionState.ERROR)


def _error_code(exc: Exception) -> str:
    # Map a remote failure onto the error code shown to the admin.
    if isinstance(exc, AuthError):
        return "auth_error"
    if isinstance(exc, TransportError):
        return "transport_error"
    return "remote_error"


def _apply_status(account: TenantAccount, status: AccountStatus, synced_at: datetime) -> None:
    # Copy the remote account status onto the local row.
    account.tenant_id = status.tenant_id or account.tenant_id
    account.subscription_status = SubscriptionStatus.parse(status.subscription_status).value
    account.plan = Plan.parse(status.plan).value
    account.features_enabled = list(status.features_enabled)
    account.credits_remaining = int(status.credits_remaining)
    account.credits_total = int(status.credits_total)
    account.last_synced_at = synced_at


class TenantStateResolver:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        accounts: AccountService,
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._sessions = session_factory
        self._accounts = accounts
        self._now = time_provider or _utc_now

    async def _live_marker(self, session: AsyncSession) -> PendingApprovalMarker | None:
        # Return the pending marker, deleting it once expired.
        marker = await accounts_repo.get_pending_marker(session)
        if marker is not None and marker.expires_at <= self._now():
            await accounts_repo.delete_pending_marker(session)
            logger.info("pending_marker_expired registered_at=%s", marker.registered_at.isoformat())
            return None
        return marker

    async def load_credentials(self) -> TenantCredentials | None:
        # Decrypt stored credentials; None until the tenant is registered.
        async with self._sessions() as session:
            account = await accounts_repo.get_account(session)
        if account is None or not account.api_key_encrypted or not account.tenant_id:
            return None
        return TenantCredentials(tenant_id=account.tenant_id, api_key=decrypt_secret(account.api_key_encrypted))

    async def resolve(self) -> StateResolution:
        # Fetch remote status and settle the connection state in one commit.
        try:
            credentials = await self.load_credentials()
        except AuthError as exc:
            credentials = None
            decrypt_error: Exception | None = exc
        else:
            decrypt_error = None

        remote_status: AccountStatus | None = None
        remote_error: Exception | None = decrypt_error
        if credentials is not None:
            try:
                remote_status = await self._accounts.get_status(
                    tenant_id=credentials.tenant_id,
                    api_key=credentials.api_key,
                )
            except (TransportError, AuthError) as exc:
                remote_error = exc
                logger.warning("tenant_status_fetch_failed tenant_id=%s error=%s", credentials.tenant_id, exc)

        # Refresh and marker clear commit together so no reader sees activation with a stale marker.
        async with self._sessions() as session:
            marker = await self._live_marker(session)
            decision = decide_state(
                has_credentials=credentials is not None or decrypt_error is not None,
                remote_status=remote_status,
                remote_error=remote_error,
                marker_live=marker is not None,
            )
            if remote_status is not None:
                account = await accounts_repo.get_or_create_account(session)
                _apply_status(account, remote_status, self._now())
            if decision.clear_marker:
                await accounts_repo.delete_pending_marker(session)
            await session.commit()

        if remote_status is not None:
            prime_credit_cache(remote_status)
        if decision.clear_marker:
            logger.info("pending_marker_cleared tenant_id=%s", remote_status.tenant_id if remote_status else None)

        return StateResolution(
            state=decision.state,
            status=remote_status,
            error_code=_error_code(remote_error) if remote_error is not None else None,
            error_message=str(remote_error) if remote_error is not None else None,
            marker_cleared=decision.clear_marker,
        )

    async def register(self, *, site_url: str, admin_email: str) -> Registration:
        # Register with the remote service and store the encrypted key.
        settings = get_settings()
        registration = await self._accounts.register_tenant(site_url=site_url, admin_email=admin_email)
        subscription = registration.subscription
        status = SubscriptionStatus.parse(subscription.subscription_status)
        now = self._now()
        async with self._sessions() as session:
            account = await accounts_repo.get_or_create_account(session)
            account.api_key_encrypted = encrypt_secret(registration.api_key)
            account.tenant_id = registration.tenant_id
            account.subscription_status = status.value
            account.plan = Plan.parse(subscription.plan, Plan.parse(settings.default_plan)).value
            account.features_enabled = list(subscription.features_enabled)
            account.credits_remaining = int(subscription.credits_remaining)
            account.credits_total = int(subscription.credits_total)
            account.last_synced_at = now
            if status == SubscriptionStatus.PENDING_APPROVAL:
                await accounts_repo.put_pending_marker(
                    session,
                    credits_total=int(subscription.credits_total or settings.pending_default_credits),
                    registered_at=now,
                    expires_at=now + timedelta(seconds=settings.pending_marker_ttl_s),
                )
            else:
                await accounts_repo.delete_pending_marker(session)
            await session.commit()
        invalidate_credit_cache(registration.tenant_id)
        logger.info("tenant_registered tenant_id=%s status=%s", registration.tenant_id, status.value)
        return registration

    async def disconnect(self, *, reason: str, confirm: bool = True) -> bool:
        """Forget the tenant locally; the remote disconnect is best effort."""
        try:
            credentials = await self.load_credentials()
        except AuthError:
            credentials = None
        remote_ok = False
        if credentials is not None:
            try:
                await self._accounts.disconnect(
                    tenant_id=credentials.tenant_id,
                    api_key=credentials.api_key,
                    reason=reason,
                    confirm=confirm,
                )
                remote_ok = True
            except ForumAIError as exc:
                logger.warning("tenant_remote_disconnect_failed tenant_id=%s error=%s", credentials.tenant_id, exc)

        async with self._sessions() as session:
            await accounts_repo.delete_account(session)
            await accounts_repo.delete_pending_marker(session)
            await options_repo.delete_options(session, INDEXING_OPTION_KEYS)
            reset = await items_repo.reset_all_items(session)
            await session.commit()
        invalidate_credit_cache()
        logger.info(
            "tenant_disconnected tenant_id=%s remote_ok=%s items_reset=%s",
            credentials.tenant_id if credentials else None,
            remote_ok,
            reset,
        )
        return remote_ok
