from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _bootstrap_app():
    from classifieds import create_app

    app = create_app()
    app.app_context().push()
    return app


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Re-project every listing into the search index and report failures.")
    parser.add_argument("--page-size", type=int, default=None, help="Listings per batch (default SEARCH_RECONCILE_PAGE_SIZE).")
    parser.add_argument("--prune", action="store_true", help="Delete index documents whose listing no longer exists.")
    parser.add_argument("--init", action="store_true", help="Create the index and apply settings first.")
    args = parser.parse_args(argv)

    _bootstrap_app()
    from classifieds.services.search.meili_client import SearchUnavailable
    from classifieds.services.search.synchronizer import SearchSynchronizer

    synchronizer = SearchSynchronizer()
    try:
        if args.init:
            synchronizer.init_index()
        report = synchronizer.reconcile_all(args.page_size, prune=args.prune)
    except SearchUnavailable as exc:
        print(json.dumps({"ok": False, "error": str(exc)}, indent=2))
        return 1

    summary = report.to_dict()
    print(json.dumps(summary, indent=2))
    return 0 if summary["ok"] else 2


if __name__ == "__main__":
    os.environ.setdefault("FLASK_APP", "classifieds:create_app")
    sys.exit(main())
