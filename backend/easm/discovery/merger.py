# easm/discovery/merger.py
"""
Inventory merger: applies entity deltas to the asset inventory.

One job's deltas are applied as one batch, in one transaction:

1. Coalesce deltas that share a natural key. Later ``observed_at`` wins
   per field; ties go to the more trusted capability
   (vuln_scan > port_scan > web_crawl > dns_enum > cert_transparency).
2. Upsert assets in natural-key order, then ports, technologies and
   vulnerabilities under the resolved asset ids. Ordering by key makes
   overlapping batches take row locks in the same order.
3. Link the job to every asset it touched, once.

Conflicts with rows written by other jobs are settled by the upsert
statements in AssetStore (timestamp-based, not arrival-based), so the
merger holds no locks of its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import Dict, Iterable, List, Optional, Tuple

from .asset_store import AssetStore
from .base_adapter import capability_priority
from .normalizer import (
    AssetKey, EntityDelta, UpsertAsset, UpsertPort, UpsertTechnology, UpsertVulnerability,
)

logger = logging.getLogger(__name__)

# Fields that identify a delta rather than describe an observation
_IDENTITY_FIELDS = {"key", "asset", "port_number", "protocol", "name", "version",
                    "template_id", "source", "observed_at"}


@dataclass
class MergeSummary:
    assets: int = 0
    ports: int = 0
    technologies: int = 0
    vulnerabilities: int = 0
    links: int = 0

    def as_dict(self) -> dict:
        return {
            "assets": self.assets,
            "ports": self.ports,
            "technologies": self.technologies,
            "vulnerabilities": self.vulnerabilities,
        }


def _order(delta: EntityDelta) -> Tuple:
    return (delta.observed_at, capability_priority(delta.source))


def _fold(older: EntityDelta, newer: EntityDelta) -> EntityDelta:
    """Lay ``newer`` over ``older``: non-None fields replace, attribute maps merge per key."""
    changes = {"observed_at": newer.observed_at, "source": newer.source}
    for f in fields(newer):
        if f.name in _IDENTITY_FIELDS:
            continue
        value = getattr(newer, f.name)
        if f.name == "attributes":
            changes["attributes"] = {**older.attributes, **value}
        elif value is not None:
            changes[f.name] = value
    return replace(older, **changes)


def coalesce(deltas: Iterable[EntityDelta]) -> Dict[type, List[EntityDelta]]:
    """
    Collapse deltas sharing a natural key into one, grouped by delta type
    and sorted by natural key.
    """
    grouped: Dict[Tuple, List[EntityDelta]] = {}
    for delta in deltas:
        grouped.setdefault((type(delta), delta.natural_key()), []).append(delta)

    merged: Dict[type, List[EntityDelta]] = {
        UpsertAsset: [], UpsertPort: [], UpsertTechnology: [], UpsertVulnerability: [],
    }
    for (kind, _key), group in grouped.items():
        group.sort(key=_order)
        result = group[0]
        for delta in group[1:]:
            result = _fold(result, delta)
        merged[kind].append(result)

    for kind in merged:
        merged[kind].sort(key=lambda d: d.natural_key())
    return merged


class InventoryMerger:

    def __init__(self, store: Optional[AssetStore] = None):
        self.store = store or AssetStore()

    def apply(self, job_id: int, deltas: Iterable[EntityDelta]) -> MergeSummary:
        """
        Apply one job's deltas atomically. Raises StoreUnavailable (after
        rolling back) if the database rejects the batch; the batch can be
        re-applied as-is.
        """
        batch = coalesce(deltas)
        summary = MergeSummary()
        asset_ids: Dict[AssetKey, int] = {}
        port_ids: Dict[Tuple[AssetKey, int, str], int] = {}

        # referenced-only assets still need a row and a fresher last_seen
        implicit: Dict[AssetKey, UpsertAsset] = {}
        for kind in (UpsertPort, UpsertTechnology, UpsertVulnerability):
            for d in batch[kind]:
                current = implicit.get(d.asset)
                if current is None or _order(d) > _order(current):
                    implicit[d.asset] = UpsertAsset(d.asset, d.source, d.observed_at)
        explicit = {d.key for d in batch[UpsertAsset]}
        asset_deltas = batch[UpsertAsset] + [d for k, d in implicit.items() if k not in explicit]
        asset_deltas.sort(key=lambda d: d.natural_key())

        with self.store.transaction():
            for d in asset_deltas:
                asset_ids[d.key] = self.store.upsert_asset(d.key, d.attributes, d.observed_at, d.status)
                summary.assets += 1

            for d in batch[UpsertPort]:
                port_ids[(d.asset, d.port_number, d.protocol)] = self.store.upsert_port(
                    asset_ids[d.asset], d.port_number, d.protocol, d.observed_at,
                    service_name=d.service_name, banner=d.banner, status=d.status,
                )
                summary.ports += 1

            for d in batch[UpsertTechnology]:
                self.store.upsert_technology(
                    asset_ids[d.asset], d.name, d.version, d.observed_at, category=d.category,
                )
                summary.technologies += 1

            for d in batch[UpsertVulnerability]:
                port_id = None
                if d.port:
                    port_id = port_ids.get((d.asset, d.port[0], d.port[1]))
                    if port_id is None:
                        port_id = self.store.find_port_id(asset_ids[d.asset], d.port[0], d.port[1])
                self.store.upsert_vulnerability(
                    asset_ids[d.asset], d.template_id, d.observed_at,
                    source=d.source, port_id=port_id, severity=d.severity, title=d.title,
                    description=d.description, cve_id=d.cve_id, cvss_score=d.cvss_score,
                    references=d.references, matched_at=d.matched_at,
                )
                summary.vulnerabilities += 1

            for asset_id in sorted(set(asset_ids.values())):
                self.store.link_job_asset(job_id, asset_id)
                summary.links += 1

        logger.info(
            "job #%d merged: %d assets, %d ports, %d technologies, %d vulnerabilities",
            job_id, summary.assets, summary.ports, summary.technologies, summary.vulnerabilities,
        )
        return summary
