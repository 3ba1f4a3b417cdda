from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    try:
        from celery_app import celery

        celery.loader.import_default_modules()

        missing = [
            name
            for name in (
                "classifieds.tasks.search_tasks.search_index_listing",
                "classifieds.tasks.search_tasks.search_delete_listing",
                "classifieds.tasks.search_tasks.search_reconcile_all",
                "classifieds.tasks.expiry_tasks.run_listing_expiry_sweep",
            )
            if name not in celery.tasks
        ]
        if missing:
            print(f"error: tasks not registered: {', '.join(missing)}", file=sys.stderr)
            return 1
        schedule = sorted((celery.conf.beat_schedule or {}).keys())
        print(f"ok: celery_app:celery import succeeded beat={','.join(schedule)}")
        return 0
    except Exception as exc:
        print(f"error: failed to import celery_app:celery -> {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
