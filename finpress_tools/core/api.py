"""Clients for the FinPress checksum and version-check APIs."""

from __future__ import annotations

from typing import Any, Protocol

import httpx
import structlog
from pydantic import ValidationError

from finpress_tools.core.config import FetchConfig
from finpress_tools.core.errors import ManifestUnavailableError, TransferError
from finpress_tools.core.fetcher import HTTPSession
from finpress_tools.core.types import DEFAULT_LOCALE, Manifest, ReleaseOffer

logger = structlog.get_logger()


class ChecksumSource(Protocol):
    """Anything that can provide the per-file manifest of a release."""

    def get_manifest(self, version: str, locale: str) -> Manifest:
        """Return the path -> md5 mapping for a release.

        Raises:
            ManifestUnavailableError: If the manifest cannot be obtained
        """
        ...


class APIClient(HTTPSession):
    """JSON GET helper shared by the API clients."""

    def _get_json(self, path: str, params: dict[str, str]) -> tuple[int, Any]:
        """GET an API endpoint and decode its JSON body.

        Returns:
            Tuple of (status code, decoded body or None if not JSON)

        Raises:
            TransferError: On transport failures
        """
        url = f"{self.config.api_base_url}/{path.lstrip('/')}"

        def operation(client: httpx.Client) -> tuple[int, Any]:
            response = client.get(
                url,
                params=params,
                headers={"Accept": "application/json"},
                timeout=self.config.api_timeout,
            )
            try:
                body = response.json()
            except ValueError:
                body = None
            return response.status_code, body

        return self.request(url, operation)

    def __enter__(self) -> APIClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()


class ChecksumClient(APIClient):
    """Fetches release manifests from the checksum API."""

    ENDPOINT = "core/checksums/1.0/"

    def get_manifest(self, version: str, locale: str = DEFAULT_LOCALE) -> Manifest:
        """Fetch per-file md5 checksums for a release.

        Args:
            version: Release version
            locale: Release locale

        Returns:
            Mapping of install-relative path to md5

        Raises:
            ManifestUnavailableError: If the API has no checksums for the release
                or cannot be reached
        """
        unavailable = f"Checksums not available for FinPress {version}/{locale}."

        try:
            status_code, body = self._get_json(self.ENDPOINT, {"version": version, "locale": locale})
        except TransferError as e:
            raise ManifestUnavailableError(str(e), version=version, locale=locale) from e

        if not 200 <= status_code < 300 or not isinstance(body, dict):
            logger.debug("checksums_request_failed", version=version, locale=locale, status_code=status_code)
            raise ManifestUnavailableError(unavailable, version=version, locale=locale)

        checksums = body.get("checksums")
        if not isinstance(checksums, dict) or not checksums:
            raise ManifestUnavailableError(unavailable, version=version, locale=locale)

        # Multi-version responses nest the mapping under the version number
        nested = checksums.get(version)
        if isinstance(nested, dict):
            checksums = nested

        manifest = {str(path): str(md5) for path, md5 in checksums.items() if isinstance(md5, str)}
        if not manifest:
            raise ManifestUnavailableError(unavailable, version=version, locale=locale)

        logger.debug("checksums_fetched", version=version, locale=locale, files=len(manifest))
        return manifest


class VersionCheckClient(APIClient):
    """Queries the version-check API for release offers."""

    ENDPOINT = "core/version-check/1.7/"


    def get_offers(self, locale: str = DEFAULT_LOCALE) -> list[ReleaseOffer]:
        """Get every release offered for a locale.

        Offers are returned in API order, which lists the newest release
        first. Malformed offers are skipped.

        Args:
            locale: Locale to request

        Returns:
            List of offers, empty if the locale has none

        Raises:
            TransferError: If the API cannot be reached or returns an error
        """
        status_code, body = self._get_json(self.ENDPOINT, {"locale": locale})
        if not 200 <= status_code < 300:
            raise TransferError(
                f"Version check failed (HTTP code {status_code}).",
                status_code=status_code,
                url=f"{self.config.api_base_url}/{self.ENDPOINT}",
            )

        raw_offers = body.get("offers") if isinstance(body, dict) else None
        if not isinstance(raw_offers, list):
            return []

        offers: list[ReleaseOffer] = []
        for offer in raw_offers:
            if not isinstance(offer, dict):
                continue
            if offer.get("locale", DEFAULT_LOCALE) != locale:
                continue
            version = offer.get("current") or offer.get("version")
            download = offer.get("download")
            if not version or not download:
                continue
            extra = {k: v for k, v in offer.items() if k not in {"version", "locale", "download"}}
            try:
                offers.append(ReleaseOffer(version=version, locale=locale, download=download, **extra))
            except ValidationError as e:
                logger.debug("invalid_offer_skipped", version=version, error=str(e))

        return offers

    def get_download_offer(self, locale: str = DEFAULT_LOCALE) -> ReleaseOffer | None:
        """Get the latest release offered for a locale.

        Returns:
            The first upgrade offer, or None if the locale has no offer

        Raises:
            TransferError: If the API cannot be reached or returns an error
        """
        offers = self.get_offers(locale)
        return offers[0] if offers else None
