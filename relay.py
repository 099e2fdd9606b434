"""
GiftPacks — Relay client (gasless claim submission)
Submits sponsored calls to a Gelato-style relay and polls task state.
MockRelay replaces the network path with deterministic task ids and
immediate success when CLAIM_MOCK is enabled.
"""
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional, Union

import httpx

from config import CLAIM_MOCK, RELAY_API_KEY, RELAY_TIMEOUT_SEC, RELAY_URL, PLACEHOLDER_MARKERS

logger = logging.getLogger(__name__)

# Relay task states
PENDING_STATES = frozenset({"CheckPending", "ExecPending", "WaitingForConfirmation"})
SUCCESS_STATES = frozenset({"ExecSuccess"})
FAILURE_STATES = frozenset({"ExecReverted", "Cancelled", "Blacklisted", "NotFound"})


class RelayError(Exception):
    """Raised when the relay cannot be reached or rejects a request."""


@dataclass(frozen=True)
class RelaySubmission:
    task_id: str
    settled: bool = False   # True when the relay reports success synchronously


class RelayClient:
    mock = False

    def __init__(
        self,
        base_url: str = RELAY_URL,
        api_key: str = RELAY_API_KEY,
        timeout: float = RELAY_TIMEOUT_SEC,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def submit(self, chain_id: int, target: str, data: str) -> RelaySubmission:
        payload = {"chainId": str(chain_id), "target": target, "data": data, "sponsorApiKey": self.api_key}
        try:
            async with self._client() as client:
                resp = await client.post("/relays/v2/sponsored-call", json=payload)
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPError as exc:
            raise RelayError(f"Relay submission failed: {exc}") from exc
        except ValueError as exc:
            raise RelayError(f"Relay returned invalid JSON: {exc}") from exc

        task_id = body.get("taskId")
        if not task_id:
            raise RelayError(f"Relay response missing taskId: {body}")
        logger.info("Relay accepted claim call to %s as task %s", target, task_id)
        return RelaySubmission(task_id=task_id)

    async def task_state(self, task_id: str) -> str:
        try:
            async with self._client() as client:
                resp = await client.get(f"/tasks/status/{task_id}")
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPError as exc:
            raise RelayError(f"Relay status lookup failed: {exc}") from exc
        except ValueError as exc:
            raise RelayError(f"Relay returned invalid JSON: {exc}") from exc
        return (body.get("task") or {}).get("taskState", "NotFound")


class MockRelay:
    """Deterministic stand-in used for tests and demos; never touches the network."""

    mock = True

    def __init__(self):
        self._sequence = 0

    async def submit(self, chain_id: int, target: str, data: str) -> RelaySubmission:
        self._sequence += 1
        seed = f"{chain_id}:{target.lower()}:{data}:{self._sequence}"
        return RelaySubmission(task_id="mock-" + hashlib.sha256(seed.encode()).hexdigest()[:32], settled=True)

    async def task_state(self, task_id: str) -> str:
        return "ExecSuccess"


Relay = Union[RelayClient, MockRelay]


def connect_relay(api_key: str = RELAY_API_KEY, mock: bool = CLAIM_MOCK) -> Optional[Relay]:
    if mock:
        logger.info("Relay in MOCK mode: claims settle immediately with synthetic task ids")
        return MockRelay()
    if not api_key or any(marker in api_key for marker in PLACEHOLDER_MARKERS):
        logger.info("Relay not configured; claims return unsigned transactions")
        return None
    return RelayClient(api_key=api_key)
