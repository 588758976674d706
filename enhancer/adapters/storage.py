import logging
from typing import Optional
from urllib.parse import quote, unquote, urlparse

import httpx

from enhancer.core.config import Settings
from enhancer.core.errors import InvalidRequest, NotConfigured, UpstreamUnavailable

log = logging.getLogger("storage")

DEFAULT_TIMEOUT = 30.0
# Inference outputs live on the provider's CDN, never in our bucket
FOREIGN_HOSTS = ("replicate.delivery",)


class SupabaseStorage:
    """Object storage over the Supabase Storage REST API. Paths are `{owner}/{file}`."""

    def __init__(self, settings: Settings, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = (settings.SUPABASE_URL or "").rstrip("/")
        self.key = settings.SUPABASE_SERVICE_ROLE_KEY
        self.bucket = settings.STORAGE_BUCKET
        self.max_bytes = max(1, settings.MAX_UPLOAD_MB) * 1024 * 1024
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.key)

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.key}", "apikey": self.key or ""}

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{quote(path)}"

    def path_from_url(self, url: str | None) -> Optional[str]:
        """Bucket-relative path for one of our public URLs; None for anything else."""
        if not url:
            return None
        host = urlparse(url).netloc
        if any(host == h or host.endswith("." + h) for h in FOREIGN_HOSTS):
            return None
        marker = f"/{self.bucket}/"
        if marker not in url:
            return None
        path = url.split(marker, 1)[1].split("?", 1)[0]
        return unquote(path) or None

    async def upload(self, path: str, data: bytes, content_type: str = "image/png") -> str:
        if not self.configured:
            raise NotConfigured("Object storage is not configured.")
        if not data:
            raise InvalidRequest("Image is empty.")
        if len(data) > self.max_bytes:
            raise InvalidRequest(
                f"Image exceeds the {self.max_bytes // (1024 * 1024)} MB upload limit."
            )
        headers = {**self._headers(), "Content-Type": content_type, "x-upsert": "false"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(path)}",
                    content=data,
                    headers=headers,
                )
        except httpx.HTTPError as e:
            log.warning("storage.upload failed path=%s err=%s", path, type(e).__name__)
            raise UpstreamUnavailable("storage", "Could not store the image. Please retry.") from e
        if resp.status_code >= 400:
            log.warning("storage.upload rejected path=%s status=%s", path, resp.status_code)
            raise UpstreamUnavailable("storage", "Could not store the image. Please retry.")
        log.info("storage.upload path=%s bytes=%d", path, len(data))
        return self.public_url(path)

    async def delete(self, url: str | None) -> bool:
        """Delete the object behind `url`. Foreign or unparseable URLs are skipped (False)."""
        path = self.path_from_url(url)
        if path is None:
            log.info("storage.delete skipped url=%s", url)
            return False
        if not self.configured:
            raise NotConfigured("Object storage is not configured.")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(
                    "DELETE",
                    f"{self.base_url}/storage/v1/object/{self.bucket}",
                    json={"prefixes": [path]},
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            raise UpstreamUnavailable("storage", f"Could not delete {path}.") from e
        if resp.status_code >= 400:
            raise UpstreamUnavailable("storage", f"Could not delete {path} (status {resp.status_code}).")
        return True
