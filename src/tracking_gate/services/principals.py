"""Principal store: API-key and site lookups consumed by the gate.

The authoritative store is the relational site registry, which lives outside
this package. The gate only depends on the `PrincipalStore` protocol; the
in-memory implementation below backs tests and single-node development and can
be seeded from a JSON file::

    [
      {"site_id": "site_1", "tenant_id": "tenant_1", "salt": "...",
       "status": "active", "api_keys": ["ut_live_..."]}
    ]
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class PrincipalStoreError(RuntimeError):
    """Raised when the principal store cannot answer a lookup."""


class SiteStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


@dataclass(frozen=True)
class Site:
    """Site facts the gate needs: owning tenant, signing salt and status."""

    site_id: str
    tenant_id: str
    salt: str
    status: SiteStatus = SiteStatus.ACTIVE
    api_keys: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_active(self) -> bool:
        return self.status is SiteStatus.ACTIVE


class PrincipalStore(Protocol):
    async def resolve_api_key(self, api_key: str) -> str | None:
        """Return the site id bound to `api_key`, or None if unknown."""
        ...

    async def get_site(self, site_id: str) -> Site | None:
        ...


class InMemoryPrincipalStore:
    """Dictionary-backed principal store. Unknown keys are always rejected."""

    def __init__(self, sites: list[Site] | None = None) -> None:
        self._sites: dict[str, Site] = {}
        self._api_keys: dict[str, str] = {}
        for site in sites or []:
            self.add_site(site)

    def add_site(self, site: Site) -> None:
        self._sites[site.site_id] = site
        for api_key in site.api_keys:
            self._api_keys[api_key] = site.site_id

    async def resolve_api_key(self, api_key: str) -> str | None:
        return self._api_keys.get(api_key)

    async def get_site(self, site_id: str) -> Site | None:
        return self._sites.get(site_id)

    @classmethod
    def from_file(cls, path: str | Path) -> InMemoryPrincipalStore:
        """Load sites from a JSON list.

        Raises:
            PrincipalStoreError: If the file cannot be read or parsed.
        """
        try:
            raw: list[dict[str, Any]] = json.loads(Path(path).read_text(encoding="utf-8"))
            sites = [
                Site(
                    site_id=entry["site_id"],
                    tenant_id=entry["tenant_id"],
                    salt=entry["salt"],
                    status=SiteStatus(entry.get("status", SiteStatus.ACTIVE.value)),
                    api_keys=frozenset(entry.get("api_keys", [])),
                )
                for entry in raw
            ]
        except (OSError, ValueError, KeyError, TypeError) as err:
            raise PrincipalStoreError(f"Could not load sites from {path}: {err}") from err
        logger.info("Loaded %d sites from %s", len(sites), path)
        return cls(sites)
