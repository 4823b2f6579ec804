from __future__ import annotations

import argparse
import logging

from cpd_planner.config import settings
from cpd_planner.db import SessionLocal
from cpd_planner.services.demand_freeze_service import FreezeResult, attempt_automatic_freeze, attempt_automatic_freeze_all
from cpd_planner.services.outcomes import Outcome


def run(*, organization_id: int | None = None) -> list[FreezeResult]:
    with SessionLocal() as db:
        if organization_id is None:
            results = attempt_automatic_freeze_all(db)
        else:
            results = [attempt_automatic_freeze(db, organization_id=organization_id)]
        db.commit()
    return results


def main() -> None:
    parser = argparse.ArgumentParser(description='Freeze store demand for organizations past their cutoff time.')
    parser.add_argument(
        '--organization-id',
        type=int,
        default=None,
        help='Only check this organization. Defaults to every active organization.',
    )
    args = parser.parse_args()
    logging.basicConfig(level=settings.log_level.upper(), format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    results = run(organization_id=args.organization_id)
    frozen = [r for r in results if r.outcome == Outcome.SUCCESS]
    failed = [r for r in results if r.outcome == Outcome.FAILED]
    for result in results:
        day = result.operational_day.isoformat() if result.operational_day else '-'
        line = (
            f'org={result.organization_id} day={day} '
            f'outcome={result.outcome.value} items={result.items_frozen} rows={result.rows_frozen}'
        )
        if result.reason and result.outcome == Outcome.FAILED:
            line += f' reason={result.reason}'
        print(line)
    print(f'Cutoff freeze complete: checked={len(results)}, frozen={len(frozen)}, failed={len(failed)}')
    if failed:
        raise SystemExit(1)


if __name__ == '__main__':
    main()
