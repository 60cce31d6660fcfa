"""Write access to the generic package registry ("bus").

A :class:`BusWriter` owns the only client configured with the bus
credential.  The composition root hands it to the publisher and to nothing
else.
"""

from __future__ import annotations

from urllib.parse import quote

from runrelay.core.host.client import ResilientClient
from runrelay.utils.logging import get_logger

logger = get_logger("host.bus")


class BusWriter:
    def __init__(self, client: ResilientClient, api_url: str) -> None:
        self._client = client
        self.api_url = api_url.rstrip("/")

    def package_file_url(
        self,
        project_id: str,
        package: str,
        version: str,
        dest_name: str,
    ) -> str:
        return (
            f"{self.api_url}/projects/{quote(str(project_id), safe='')}/packages/generic/"
            f"{quote(package, safe='')}/{quote(version, safe='')}/{quote(dest_name, safe='')}"
        )

    async def upload_to_store(
        self,
        project_id: str,
        package: str,
        version: str,
        dest_name: str,
        data: bytes,
    ) -> str:
        """Upload *data* as ``package/version/dest_name`` and return its URL."""
        url = self.package_file_url(project_id, package, version, dest_name)
        await self._client.put(url, data)
        logger.info(
            "store_upload_complete",
            project_id=project_id,
            package=package,
            version=version,
            file=dest_name,
            size_bytes=len(data),
        )
        return url
