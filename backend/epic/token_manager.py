"""
Epic token manager

Owns the OAuth token stored on a facility's ``epic_connections`` row and the
authenticated FHIR request used by everything else in the integration.

``epic_fhir_request`` checks expiry locally before touching the network,
times each attempt out after 10s and retries only on HTTP 429 or timeout
(1s, 2s, 4s backoff, 4 attempts in all). A 401 marks the token expired.
Nothing here raises to the caller; failures come back as ``error`` strings.
"""

import asyncio
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from exceptions import InvalidTransitionError
from http_client import FHIR_JSON, HTTPClientManager, get_http_client
from logging_config import ComponentLogger, get_component_logger

from .audit import EpicAuditLogger
from .connection_state import ConnectionEvent, SideEffect, Transition, transition
from .dal import EpicDAL
from .models import EpicTokenResponse, FhirResult, OperationResult, TokenExpiryInfo, TokenResult

FHIR_TIMEOUT_SECONDS = 10.0
MAX_RETRIES = 3
BASE_BACKOFF_SECONDS = 1.0

NO_CONNECTION_ERROR = "No Epic connection found for this facility"
NO_TOKEN_ERROR = "No access token available. Please connect to Epic."
TOKEN_EXPIRED_ERROR = "Epic token has expired. Please reconnect."
TOKEN_REJECTED_ERROR = "Epic token is invalid or expired. Please reconnect."
NO_BASE_URL_ERROR = "Failed to get FHIR base URL"
TIMEOUT_ERROR = "FHIR request timed out after 10s. Epic may be slow, try again."
RATE_LIMITED_ERROR = f"FHIR request failed: 429 Too Many Requests (rate limited after {MAX_RETRIES} retries)"

Timestamp = Union[str, datetime, None]

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def parse_timestamp(value: Timestamp) -> Optional[datetime]:
    """Parse a stored ISO-8601 timestamp into an aware UTC datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)

def get_token_expiry_info(token_expires_at: Timestamp, now: Optional[datetime] = None) -> TokenExpiryInfo:
    """Countdown view of a token expiry; a missing expiry counts as expired"""
    expires_at = parse_timestamp(token_expires_at)
    if expires_at is None:
        return TokenExpiryInfo(expires_at=None, is_expired=True, minutes_remaining=None)

    diff_seconds = (expires_at - (now or utc_now())).total_seconds()
    is_expired = diff_seconds <= 0
    return TokenExpiryInfo(
        expires_at=expires_at,
        is_expired=is_expired,
        minutes_remaining=0 if is_expired else math.floor(diff_seconds / 60)
    )

def backoff_seconds(attempt: int) -> float:
    return BASE_BACKOFF_SECONDS * (2 ** attempt)

class TokenManager:
    """Token storage and authenticated FHIR access for Epic connections.

    Status writes go through ``connection_state.transition``; the
    read-check-write on a facility's row is serialised by a per-facility
    ``asyncio.Lock``.
    """

    def __init__(
        self,
        dal: EpicDAL,
        http: Optional[HTTPClientManager] = None,
        audit: Optional[EpicAuditLogger] = None,
        logger: Optional[ComponentLogger] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.dal = dal
        self.http = http or get_http_client()
        self.audit = audit or EpicAuditLogger(dal.db)
        self.log = logger or get_component_logger("token-manager")
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or utc_now
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, facility_id: str) -> asyncio.Lock:
        lock = self._locks.get(facility_id)
        if lock is None:
            lock = self._locks[facility_id] = asyncio.Lock()
        return lock

    async def _write_transition(
        self,
        facility_id: str,
        step: Transition,
        updates: Dict[str, Any],
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
        fhir_base_url: Optional[str] = None
    ) -> OperationResult:
        """Persist the next status plus the column changes its side effects call for"""
        values = dict(updates)
        values['status'] = step.status.value
        if step.has(SideEffect.STAMP_LAST_CONNECTED):
            values['last_connected_at'] = self._clock().isoformat()
        if step.has(SideEffect.CLEAR_LAST_ERROR):
            values['last_error'] = None
        if step.has(SideEffect.WIPE_TOKENS):
            values.update(access_token=None, refresh_token=None, token_expires_at=None, token_scopes=None)

        _, error = await self.dal.update_connection(facility_id, values)
        if error:
            return OperationResult(False, error)

        if step.has(SideEffect.AUDIT_CONNECTED):
            await self.audit.connected(facility_id, user_id, fhir_base_url)
        if step.has(SideEffect.AUDIT_TOKEN_EXPIRED):
            await self.audit.token_expired(facility_id, reason or "expired")
        if step.has(SideEffect.AUDIT_DISCONNECTED):
            await self.audit.disconnected(facility_id, user_id)
        return OperationResult(True)

    async def _apply_event(
        self,
        facility_id: str,
        event: ConnectionEvent,
        updates: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        reason: Optional[str] = None
    ) -> OperationResult:
        async with self._lock_for(facility_id):
            connection, error = await self.dal.get_connection(facility_id)
            if error:
                return OperationResult(False, error)
            if not connection:
                return OperationResult(False, NO_CONNECTION_ERROR)

            try:
                step = transition(connection['status'], event)
            except InvalidTransitionError as e:
                self.log.warning(
                    "Ignoring connection status change",
                    context={"facility_id": facility_id, "error": e.message}
                )
                return OperationResult(False, e.message)

            return await self._write_transition(
                facility_id, step, updates or {},
                user_id=user_id, reason=reason, fhir_base_url=connection.get('fhir_base_url')
            )

    async def store_epic_token(
        self,
        facility_id: str,
        token_response: Union[EpicTokenResponse, Dict[str, Any]],
        connected_by: str
    ) -> OperationResult:
        """Save a token deposited by the OAuth callback and mark the facility connected"""
        if isinstance(token_response, dict):
            token_response = EpicTokenResponse.from_dict(token_response)

        expires_at = self._clock() + timedelta(seconds=token_response.expires_in)
        scopes = token_response.scope.split() if token_response.scope else []

        result = await self._apply_event(
            facility_id,
            ConnectionEvent.TOKEN_STORED,
            updates={
                'access_token': token_response.access_token,
                'refresh_token': token_response.refresh_token or None,
                'token_expires_at': expires_at.isoformat(),
                'token_scopes': scopes,
                'connected_by': connected_by,
            },
            user_id=connected_by
        )
        if result.success:
            self.log.info("Epic token stored", context={"facility_id": facility_id})
        else:
            self.log.error("Failed to store Epic token", context={"facility_id": facility_id, "error": result.error})
        return result

    async def clear_epic_token(self, facility_id: str, user_id: Optional[str] = None) -> OperationResult:
        """Wipe every token column and mark the facility disconnected"""
        result = await self._apply_event(facility_id, ConnectionEvent.DISCONNECT, user_id=user_id)
        if result.success:
            self.log.info("Epic token cleared", context={"facility_id": facility_id})
        else:
            self.log.error("Failed to clear Epic token", context={"facility_id": facility_id, "error": result.error})
        return result

    async def record_connection_error(self, facility_id: str, message: str) -> OperationResult:
        """Mark a failed OAuth grant; the message is kept as the connection's last error"""
        self.log.warning("Epic connection failed", context={"facility_id": facility_id, "error": message})
        return await self._apply_event(
            facility_id, ConnectionEvent.CONNECT_FAILED, updates={'last_error': message}
        )

    async def _mark_token_expired(self, facility_id: str, event: ConnectionEvent, reason: str):
        result = await self._apply_event(facility_id, event, reason=reason)
        if not result.success:
            self.log.warning(
                "Could not mark Epic token expired",
                context={"facility_id": facility_id, "error": result.error}
            )

    async def get_epic_access_token(self, facility_id: str) -> TokenResult:
        """Current access token, checked against its stored expiry without any network call"""
        connection, error = await self.dal.get_connection(facility_id)
        if error or not connection:
            self.log.error("Failed to fetch Epic connection", context={"facility_id": facility_id, "error": error})
            return TokenResult(None, NO_CONNECTION_ERROR)

        if not connection.get('access_token'):
            return TokenResult(None, NO_TOKEN_ERROR)

        if connection.get('token_expires_at'):
            info = get_token_expiry_info(connection['token_expires_at'], now=self._clock())
            if info.is_expired:
                await self._mark_token_expired(facility_id, ConnectionEvent.TOKEN_EXPIRED, "expired")
                self.log.warning("Epic token expired", context={"facility_id": facility_id})
                return TokenResult(None, TOKEN_EXPIRED_ERROR)

        return TokenResult(connection['access_token'], None)

    async def epic_fhir_request(
        self,
        facility_id: str,
        resource_path: str,
        method: str = "GET",
        body: Any = None
    ) -> FhirResult:
        """Authenticated request against the facility's FHIR server.

        ``resource_path`` is relative to the connection's base URL, e.g.
        ``"Patient/123"`` or ``"Appointment?date=ge2026-03-01"``.
        """
        # Proactive expiry check
        check, _ = await self.dal.get_connection(facility_id)
        if check and check.get('token_expires_at'):
            if get_token_expiry_info(check['token_expires_at'], now=self._clock()).is_expired:
                await self._mark_token_expired(facility_id, ConnectionEvent.TOKEN_EXPIRED, "expired")
                return FhirResult(None, TOKEN_EXPIRED_ERROR)

        token, token_error = await self.get_epic_access_token(facility_id)
        if not token:
            return FhirResult(None, token_error)

        connection, conn_error = await self.dal.get_connection(facility_id)
        if conn_error or not connection or not connection.get('fhir_base_url'):
            return FhirResult(None, NO_BASE_URL_ERROR)

        url = f"{connection['fhir_base_url'].rstrip('/')}/{resource_path}"
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": FHIR_JSON,
            "Content-Type": FHIR_JSON,
        }
        context = {"facility_id": facility_id, "resource_path": resource_path}

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await asyncio.wait_for(
                    self.http.send(method, url, headers=headers, json=body, timeout=FHIR_TIMEOUT_SECONDS),
                    timeout=FHIR_TIMEOUT_SECONDS
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                if isinstance(e, asyncio.TimeoutError):
                    # send() already counted transport timeouts
                    self.http.record_timeout()
                if attempt < MAX_RETRIES:
                    await self._backoff("FHIR request timed out, retrying", attempt, context)
                    continue
                self.log.error("FHIR request timed out", context={**context, "attempts": attempt + 1})
                return FhirResult(None, TIMEOUT_ERROR)
            except httpx.HTTPError as e:
                self.log.error("FHIR request threw", context={**context, "error": str(e)})
                return FhirResult(None, f"FHIR request error: {e}")

            if response.status_code == 429:
                if attempt < MAX_RETRIES:
                    await self._backoff("FHIR rate limited, retrying", attempt, context)
                    continue
                self.log.error("FHIR rate limit retries exhausted", context={**context, "attempts": attempt + 1})
                return FhirResult(None, RATE_LIMITED_ERROR)

            if not response.is_success:
                self.log.error(
                    "FHIR request failed",
                    context={**context, "status": response.status_code, "error": response.text[:500]}
                )
                if response.status_code == 401:
                    await self._mark_token_expired(facility_id, ConnectionEvent.TOKEN_REJECTED, "rejected")
                    return FhirResult(None, TOKEN_REJECTED_ERROR)
                return FhirResult(None, f"FHIR request failed: {response.status_code} {response.reason_phrase}")

            try:
                return FhirResult(response.json(), None)
            except ValueError as e:
                self.log.error("FHIR response was not JSON", context={**context, "error": str(e)})
                return FhirResult(None, "FHIR response was not valid JSON")

        # Every iteration returns or continues
        return FhirResult(None, "FHIR request failed after retries")

    async def _backoff(self, message: str, attempt: int, context: Dict[str, Any]):
        delay = backoff_seconds(attempt)
        self.log.warning(message, context={**context, "attempt": attempt, "backoff_seconds": delay})
        self.http.record_retry()
        await self._sleep(delay)
