from __future__ import annotations

import argparse
import logging

from cpd_planner.config import settings
from cpd_planner.db import SessionLocal
from cpd_planner.services.outcomes import Outcome
from cpd_planner.services.reconciliation_service import (
    SweepResult,
    run_reconciliation_sweep,
    run_reconciliation_sweep_all,
)


def run(*, organization_id: int | None = None, window_days: int | None = None) -> list[SweepResult]:
    with SessionLocal() as db:
        if organization_id is None:
            results = run_reconciliation_sweep_all(db, window_days=window_days)
        else:
            results = [run_reconciliation_sweep(db, organization_id=organization_id, window_days=window_days)]
        db.commit()
    return results


def main() -> None:
    parser = argparse.ArgumentParser(
        description='Create manifests for finished productions that were waiting on central stock.'
    )
    parser.add_argument('--organization-id', type=int, default=None, help='Only sweep this organization.')
    parser.add_argument(
        '--window-days',
        type=int,
        default=None,
        help='How many operational days back to look. Defaults to the organization setting.',
    )
    args = parser.parse_args()
    logging.basicConfig(level=settings.log_level.upper(), format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    results = run(organization_id=args.organization_id, window_days=args.window_days)
    manifests = sum(r.manifests_created for r in results)
    distributed = sum(r.records_distributed for r in results)
    failed = [r for r in results if r.outcome == Outcome.FAILED]
    print(
        f'Distribution reconciliation complete: organizations={len(results)}, '
        f'records_distributed={distributed}, manifests_created={manifests}, failed={len(failed)}'
    )
    if failed:
        raise SystemExit(1)


if __name__ == '__main__':
    main()
