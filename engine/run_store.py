import os, json, re
import logging
from typing import Any, Iterable, Optional, Protocol

from schemas.domain import AssessmentRun, RawSnapshot

LOGGER = logging.getLogger(__name__)


class RunStore(Protocol):
    def save_run(self, run: AssessmentRun, extra: Optional[dict] = None) -> str: ...

    def save_snapshots(self, snapshots: Iterable[RawSnapshot], tenant_name: str = "") -> int: ...

    def get_last_run(self, tenant_id: str, tenant_name: str = "") -> Optional[str]: ...


def _slugify(name: str) -> str:
    """Convert a display name to a filesystem-safe folder name."""
    slug = re.sub(r"[^\w\s-]", "", name.strip())
    slug = re.sub(r"[\s]+", "_", slug)
    return slug[:64] or "unknown"


def load_run(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class JsonRunStore:
    """One JSON file per run under ``<out_root>/<tenant-slug>/``.

    Raw payloads go to ``<out_root>/<tenant-slug>/<run_id>/raw/<domain>/<key>.json``.
    Run ids start with a UTC timestamp, so lexical order is run order.
    """

    def __init__(self, out_root: str):
        self.out_root = out_root

    def tenant_dir(self, tenant_id: str, tenant_name: str = "") -> str:
        slug = _slugify(tenant_name) if tenant_name else _slugify(tenant_id or "unknown")
        return os.path.join(self.out_root, slug)

    def save_run(self, run: AssessmentRun, extra: Optional[dict] = None) -> str:
        path = self.tenant_dir(run.tenant.tenant_id, run.tenant.display_name)
        os.makedirs(path, exist_ok=True)

        payload: dict[str, Any] = dict(run.to_dict())
        payload.update(extra or {})

        file = os.path.join(path, f"{run.run_id}.json")
        with open(file, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, default=str)

        LOGGER.info("Saved run %s to %s", run.run_id, file)
        return file

    def save_snapshots(self, snapshots: Iterable[RawSnapshot], tenant_name: str = "") -> int:
        count = 0
        for snap in snapshots:
            folder = os.path.join(
                self.tenant_dir(snap.tenant_id, tenant_name), snap.run_id, "raw", snap.domain.value,
            )
            os.makedirs(folder, exist_ok=True)
            with open(os.path.join(folder, f"{_slugify(snap.endpoint)}.json"), "w", encoding="utf-8") as f:
                json.dump({
                    "tenant_id": snap.tenant_id,
                    "run_id": snap.run_id,
                    "domain": snap.domain.value,
                    "endpoint": snap.endpoint,
                    "collected_at": snap.collected_at.isoformat(),
                    "payload": snap.payload,
                }, f, indent=2)
            count += 1
        LOGGER.debug("Saved %d raw snapshots", count)
        return count

    def get_last_run(self, tenant_id: str, tenant_name: str = "") -> Optional[str]:
        path = self.tenant_dir(tenant_id, tenant_name)
        if not os.path.isdir(path):
            # Fall back to the tenant id folder when the display name changed
            if tenant_id:
                path = self.tenant_dir(tenant_id)
            if not os.path.isdir(path):
                return None

        files = sorted(f for f in os.listdir(path) if f.endswith(".json"))
        if not files:
            return None

        return os.path.join(path, files[-1])
