from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from cpd_planner.models import AuditLog, BandStatus, CalibrationSample, ProductionStatus
from cpd_planner.services.calibration_service import (
    compute_calibration,
    compute_moving_average,
    record_calibration,
    require_weight_band,
)
from cpd_planner.services.outcomes import ConfigurationError
from cpd_planner.services.production_settings_service import resolve_production_params

from db_support import add_lot_item, add_org, add_record, add_store, new_session


class CalibrationMathTests(unittest.TestCase):
    def test_average_inside_band_is_within(self) -> None:
        result = compute_calibration(
            final_weight_g=Decimal('5000'),
            scrap_weight_g=Decimal('100'),
            actual_units=100,
            band_min_g=Decimal('45'),
            band_max_g=Decimal('55'),
        )
        self.assertEqual(result.mass_used_g, Decimal('5100.00'))
        self.assertEqual(result.avg_real_weight_g, Decimal('51.00'))
        self.assertEqual(result.band_status, BandStatus.WITHIN)
        self.assertEqual(result.deviation_g, Decimal('0'))

    def test_average_over_band_reports_deviation(self) -> None:
        result = compute_calibration(
            final_weight_g=Decimal('5000'),
            scrap_weight_g=Decimal('100'),
            actual_units=90,
            band_min_g=Decimal('45'),
            band_max_g=Decimal('55'),
        )
        self.assertEqual(result.avg_real_weight_g, Decimal('56.67'))
        self.assertEqual(result.band_status, BandStatus.ABOVE)
        self.assertEqual(result.deviation_g, Decimal('1.67'))

    def test_average_under_band_is_below(self) -> None:
        result = compute_calibration(
            final_weight_g=Decimal('4000'),
            scrap_weight_g=Decimal('0'),
            actual_units=100,
            band_min_g=Decimal('45'),
            band_max_g=Decimal('55'),
        )
        self.assertEqual(result.band_status, BandStatus.BELOW)
        self.assertEqual(result.deviation_g, Decimal('5.00'))

    def test_outlier_is_excluded_regardless_of_recency(self) -> None:
        newest_first = [Decimal('900')] + [Decimal('500')] * 9 + [Decimal('520')]
        average = compute_moving_average(
            newest_first,
            sanity_min_g=Decimal('200'),
            sanity_max_g=Decimal('800'),
            window=10,
        )
        self.assertEqual(average, Decimal('502.00'))

    def test_window_keeps_most_recent_valid_samples(self) -> None:
        average = compute_moving_average(
            [Decimal('300'), Decimal('400'), Decimal('700')],
            sanity_min_g=Decimal('200'),
            sanity_max_g=Decimal('800'),
            window=2,
        )
        self.assertEqual(average, Decimal('350.00'))

    def test_no_valid_samples_gives_none(self) -> None:
        average = compute_moving_average(
            [Decimal('900'), Decimal('100'), None],
            sanity_min_g=Decimal('200'),
            sanity_max_g=Decimal('800'),
            window=10,
        )
        self.assertIsNone(average)


class RecordCalibrationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = new_session()
        self.org = add_org(self.db)
        self.store = add_store(self.db, self.org, 'Downtown')
        self.params = resolve_production_params(self.db, organization_id=self.org.id)

    def tearDown(self) -> None:
        self.db.close()

    def _record(self, item):
        return add_record(
            self.db,
            self.org,
            item,
            breakdown=[{'store_id': self.store.id, 'store_name': 'Downtown', 'quantity': 100}],
            status=ProductionStatus.FINISHED,
        )

    def test_updates_operational_average_and_backfills_sample(self) -> None:
        item = add_lot_item(self.db, self.org, average_g='50', band=('45', '55'))
        older = self._record(item)
        self.db.add(
            CalibrationSample(
                organization_id=self.org.id,
                item_id=item.id,
                production_record_id=older.id,
                lots_produced=1,
                expected_units=100,
                actual_units=100,
                final_weight_g=Decimal('4900'),
                scrap_weight_g=Decimal('0'),
                mass_used_g=Decimal('4900'),
                avg_real_weight_g=Decimal('49'),
                band_status=BandStatus.WITHIN,
                deviation_g=Decimal('0'),
                created_at=datetime.now(tz=timezone.utc) - timedelta(days=1),
            )
        )
        self.db.flush()
        record = add_record(
            self.db,
            self.org,
            item,
            breakdown=[{'store_id': self.store.id, 'store_name': 'Downtown', 'quantity': 100}],
            status=ProductionStatus.FINISHED,
            operational_day=older.operational_day + timedelta(days=1),
        )

        result = record_calibration(
            self.db,
            record=record,
            item=item,
            lots_produced=1,
            actual_units=100,
            final_weight_g=Decimal('5000'),
            scrap_weight_g=Decimal('100'),
            params=self.params,
        )

        self.assertEqual(result.band_status, BandStatus.WITHIN)
        self.assertEqual(result.prior_operational_average_g, Decimal('50'))
        self.assertEqual(result.new_operational_average_g, Decimal('50.00'))
        self.assertEqual(item.operational_average_weight_g, Decimal('50.00'))
        sample = self.db.get(CalibrationSample, result.sample_id)
        self.assertEqual(sample.new_operational_average_g, Decimal('50.00'))

    def test_out_of_band_emits_alert(self) -> None:
        item = add_lot_item(self.db, self.org, average_g='50', band=('45', '55'))
        record = self._record(item)

        result = record_calibration(
            self.db,
            record=record,
            item=item,
            lots_produced=1,
            actual_units=90,
            final_weight_g=Decimal('5000'),
            scrap_weight_g=Decimal('100'),
            params=self.params,
        )
        self.db.flush()

        self.assertEqual(result.band_status, BandStatus.ABOVE)
        actions = self.db.execute(select(AuditLog.action)).scalars().all()
        self.assertIn('CALIBRATION_RECORDED', actions)
        self.assertIn('ALERT_CALIBRATION_OUT_OF_BAND', actions)

    def test_missing_band_is_configuration_error_without_writes(self) -> None:
        item = add_lot_item(self.db, self.org, band=None)
        record = self._record(item)

        with self.assertRaises(ConfigurationError):
            record_calibration(
                self.db,
                record=record,
                item=item,
                lots_produced=1,
                actual_units=100,
                final_weight_g=Decimal('5000'),
                scrap_weight_g=Decimal('0'),
                params=self.params,
            )
        self.db.flush()
        self.assertEqual(self.db.execute(select(CalibrationSample)).scalars().all(), [])

    def test_zero_band_minimum_is_a_configured_band(self) -> None:
        item = add_lot_item(self.db, self.org, band=('0', '55'))
        record = self._record(item)

        self.assertEqual(require_weight_band(item), (Decimal('0'), Decimal('55')))
        result = record_calibration(
            self.db,
            record=record,
            item=item,
            lots_produced=1,
            actual_units=100,
            final_weight_g=Decimal('5000'),
            scrap_weight_g=Decimal('100'),
            params=self.params,
        )

        self.assertEqual(result.band_status, BandStatus.WITHIN)
        self.assertEqual(result.avg_real_weight_g, Decimal('51.00'))


if __name__ == '__main__':
    unittest.main()
