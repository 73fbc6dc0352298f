"""
Minimal async Solana JSON-RPC client over aiohttp.

Only the account reads the monitor needs. Every HTTP, JSON or RPC-level
failure is raised as TransportError.
"""
import asyncio
import base64
import itertools
import logging
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from sentinel.errors import TransportError

logger = logging.getLogger(__name__)

MAX_MULTIPLE_ACCOUNTS = 100


def decode_account_data(value: Optional[Dict[str, Any]]) -> Optional[bytes]:
    """Account `data` field in base64 encoding -> raw bytes (None for a missing account)."""
    if not value:
        return None
    data = value.get("data")
    if isinstance(data, list) and data:
        encoded, encoding = data[0], (data[1] if len(data) > 1 else "base64")
        if encoding != "base64":
            raise TransportError(f"unexpected account encoding={encoding}")
        return base64.b64decode(encoded)
    if isinstance(data, str):
        return base64.b64decode(data)
    return None


class SolanaRpcClient:
    def __init__(
        self,
        url: str,
        session: Optional[aiohttp.ClientSession] = None,
        commitment: str = "confirmed",
        timeout_sec: float = 10.0,
    ):
        self.url = url
        self.commitment = commitment
        self.timeout_sec = timeout_sec
        self._session = session
        self._owns_session = False
        self._ids = itertools.count(1)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_sec),
                headers={"Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None
        self._owns_session = False

    async def call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        session = self._get_session()
        try:
            async with session.post(self.url, json=payload) as resp:
                if resp.status != 200:
                    raise TransportError(f"rpc {method} http status={resp.status}")
                body = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise TransportError(f"rpc {method} failed: {exc}") from exc

        if not isinstance(body, dict):
            raise TransportError(f"rpc {method} returned non-object body")
        if body.get("error"):
            err = body["error"]
            raise TransportError(f"rpc {method} error code={err.get('code')} msg={err.get('message')}")
        return body.get("result")

    async def get_account_info(self, address: str) -> Optional[bytes]:
        result = await self.call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        return decode_account_data((result or {}).get("value"))

    async def get_multiple_accounts(self, addresses: List[str]) -> Dict[str, Optional[bytes]]:
        out: Dict[str, Optional[bytes]] = {}
        for start in range(0, len(addresses), MAX_MULTIPLE_ACCOUNTS):
            chunk = addresses[start : start + MAX_MULTIPLE_ACCOUNTS]
            result = await self.call(
                "getMultipleAccounts",
                [chunk, {"encoding": "base64", "commitment": self.commitment}],
            )
            values = (result or {}).get("value") or []
            for address, value in zip(chunk, values):
                out[address] = decode_account_data(value)
        return out

    async def get_program_accounts(
        self,
        program_id: str,
        filters: Optional[List[Dict[str, Any]]] = None,
    ) -> List[Tuple[str, bytes]]:
        config: Dict[str, Any] = {"encoding": "base64", "commitment": self.commitment}
        if filters:
            config["filters"] = filters
        result = await self.call("getProgramAccounts", [program_id, config])
        accounts = []
        for row in result or []:
            data = decode_account_data(row.get("account"))
            if data is not None:
                accounts.append((row.get("pubkey"), data))
        logger.debug("getProgramAccounts program=%s filters=%s count=%s", program_id, len(filters or []), len(accounts))
        return accounts
