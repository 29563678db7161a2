"""Persistence helpers for manual invoice-code -> product variant mappings."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .similarity import normalize_code
from .utils import dump_json, load_json


LOGGER = logging.getLogger(__name__)


@dataclass
class MappingPreferences:
    """Stores the variant chosen for each supplier product code, per tenant.

    When ``path`` is ``None`` the mappings only live in memory.  Codes are
    compared after :func:`normalize_code`, so ``AB-001`` and ``ab001`` share a
    mapping.
    """

    path: Optional[Path] = None
    data: Dict[str, Dict[str, dict]] = field(default_factory=dict)
    history: Dict[str, list] = field(default_factory=lambda: {"decisions": []})

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        if self.path is None:
            return
        self.path = Path(self.path)
        existing = load_json(self.path)
        if existing:
            self.data.update(existing.get("data", {}))
            self.history.update(existing.get("history", {}))

    def lookup(self, tenant_id: int, product_code: Optional[str]) -> Optional[int]:
        normalized = normalize_code(product_code)
        if not normalized:
            return None
        entry = self.data.get(str(tenant_id), {}).get(normalized)
        if not entry:
            return None
        return int(entry["variant_id"])

    def save(self, tenant_id: int, product_code: Optional[str], description: str, variant_id: int, manual: bool = True) -> None:
        normalized = normalize_code(product_code)
        if not normalized:
            LOGGER.debug("Ignoring mapping without product code for '%s'", description)
            return
        entry = {
            "product_code": product_code,
            "description": description,
            "variant_id": int(variant_id),
            "manual": manual,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            self.data.setdefault(str(tenant_id), {})[normalized] = entry
            self.history.setdefault("decisions", []).append({"tenant_id": tenant_id, **entry})
        LOGGER.info("Saved mapping %s -> variant %s (tenant %s, manual=%s)", product_code, variant_id, tenant_id, manual)
        self.flush()

    def mappings(self, tenant_id: int) -> List[dict]:
        return list(self.data.get(str(tenant_id), {}).values())

    def flush(self) -> None:
        if self.path is None:
            return
        payload = {"data": self.data, "history": self.history}
        dump_json(self.path, payload)
        LOGGER.debug("Mapping preferences written to %s", self.path)


__all__ = ["MappingPreferences"]
