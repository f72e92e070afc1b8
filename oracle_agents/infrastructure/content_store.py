"""
Content-addressed artifact store client.

Artifacts are encrypted by the storage service under a key and nonce the
caller derives deterministically from the owner identity and a task
reference, so any party that knows the shared secret can decrypt:

- POST /encrypt-upload  (form: data, provider, key, nonce) -> {cid}
- POST /decrypt         (json: cid, key, nonce)             -> {data}
- GET  /ipfs/{cid}                                           -> {data}
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import aiohttp

from ..config import Config, config as default_config
from .errors import NetworkError

logger = logging.getLogger(__name__)

# Artifacts are uploaded before the ledger assigns a task id
UNASSIGNED_TASK_REF = 0

MAX_ARTIFACT_SIZE = 10 * 1024 * 1024


def derive_key(owner: str, task_ref: int, secret: str) -> str:
    """64 hex chars: sha256 of ``skal-key-{owner}-{task_ref}-{secret}``."""
    seed = f"skal-key-{owner}-{task_ref}-{secret}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def derive_nonce(owner: str, task_ref: int, secret: str) -> str:
    """24 hex chars (96-bit nonce) from ``skal-nonce-{owner}-{task_ref}-{secret}``."""
    seed = f"skal-nonce-{owner}-{task_ref}-{secret}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:24]


@dataclass
class UploadResult:
    """Result of an artifact upload."""
    success: bool
    cid: Optional[str] = None
    size: Optional[int] = None
    error: Optional[str] = None


class ContentStore:
    """Client for the encrypting storage service."""

    def __init__(
        self,
        store_config: Optional[Config] = None,
        base_url: Optional[str] = None,
        secret: Optional[str] = None
    ):
        cfg = store_config or default_config
        self.base_url = (base_url or cfg.storage_url).rstrip("/")
        self.secret = secret if secret is not None else cfg.content_secret
        self.timeout = aiohttp.ClientTimeout(total=cfg.rpc_timeout)

    def credentials(self, owner: str, task_ref: int = UNASSIGNED_TASK_REF) -> Dict[str, str]:
        return {
            "key": derive_key(owner, task_ref, self.secret),
            "nonce": derive_nonce(owner, task_ref, self.secret),
        }

    async def put(
        self,
        data: Union[bytes, str, Dict[str, Any]],
        owner: str,
        task_ref: int = UNASSIGNED_TASK_REF
    ) -> UploadResult:
        """
        Encrypt and upload an artifact.

        Args:
            data: raw bytes, text or a JSON-serializable dict
            owner: provider address the key is bound to
            task_ref: task reference the key is bound to
        """
        if isinstance(data, dict):
            data = json.dumps(data, sort_keys=True)
        payload = data.encode("utf-8") if isinstance(data, str) else data

        if len(payload) > MAX_ARTIFACT_SIZE:
            return UploadResult(success=False, error=f"Artifact too large: {len(payload)} bytes")

        form = aiohttp.FormData()
        form.add_field("data", payload.decode("utf-8", errors="replace"))
        form.add_field("provider", owner)
        for name, value in self.credentials(owner, task_ref).items():
            form.add_field(name, value)

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(f"{self.base_url}/encrypt-upload", data=form) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.error(f"Storage upload error: {response.status} - {error_text[:200]}")
                        return UploadResult(success=False, error=f"Storage API error: {response.status}")
                    result = await response.json()
        except aiohttp.ClientError as e:
            logger.error(f"Error uploading artifact: {e}")
            return UploadResult(success=False, error=str(e))

        cid = result.get("cid")
        if not result.get("success", True) or not cid:
            return UploadResult(success=False, error=result.get("error", "upload rejected"))

        logger.info(f"✅ Uploaded encrypted artifact: {cid}")
        return UploadResult(success=True, cid=cid, size=result.get("size", len(payload)))

    async def get(self, cid: str, owner: str, task_ref: int = UNASSIGNED_TASK_REF) -> bytes:
        """
        Fetch and decrypt an artifact.

        Raises:
            NetworkError: the service is unreachable or returned an error
        """
        body = {"cid": cid, **self.credentials(owner, task_ref)}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(f"{self.base_url}/decrypt", json=body) as response:
                    if response.status != 200:
                        raise NetworkError(f"Decrypt of {cid} failed: HTTP {response.status}")
                    result = await response.json()
        except aiohttp.ClientError as e:
            raise NetworkError(f"Error fetching {cid}: {e}") from e

        data = result.get("data")
        if data is None:
            raise NetworkError(f"Decrypt of {cid} returned no data: {result.get('message')}")
        if isinstance(data, (dict, list)):
            data = json.dumps(data, sort_keys=True)
        logger.debug(f"Fetched artifact {cid} ({len(data)} chars)")
        return data.encode("utf-8") if isinstance(data, str) else data

    async def fetch_raw(self, cid: str) -> Dict[str, Any]:
        """Fetch the stored (still encrypted) record for a cid."""
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(f"{self.base_url}/ipfs/{cid}") as response:
                    if response.status != 200:
                        raise NetworkError(f"Fetch of {cid} failed: HTTP {response.status}")
                    return await response.json()
        except aiohttp.ClientError as e:
            raise NetworkError(f"Error fetching {cid}: {e}") from e

    async def health_check(self) -> bool:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(f"{self.base_url}/health") as response:
                    if response.status != 200:
                        return False
                    data = await response.json()
                    return data.get("ok") is True
        except aiohttp.ClientError as e:
            logger.warning(f"Storage health check failed: {e}")
            return False
