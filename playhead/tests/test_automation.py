import unittest

from playhead.automation import (
    DEFAULT_COMPACTION,
    PITCH_BEND_COMPACTION,
    STREAM_PITCH_BEND,
    STREAM_VOLUME,
    AutomationPoint,
    CompactionSettings,
    compact,
    compaction_from_intervals,
    latest_at_or_before,
    resolve_compaction,
)


def make_ramp(count, spacing, start=0.0):
    return [AutomationPoint(time=start + i * spacing, value=i / (count - 1)) for i in range(count)]


class TestCompaction(unittest.TestCase):
    def test_dense_bend_stream_is_thinned(self):
        # 100 bends over 99 ms
        points = make_ramp(100, 0.001)
        out = compact(points, PITCH_BEND_COMPACTION)
        self.assertLess(len(out), 20)
        self.assertEqual(out[0], points[0])
        self.assertEqual(out[-1].value, 1.0)

    def test_output_bounded_by_duration(self):
        settings = CompactionSettings(min_interval=0.05, epsilon=0.0)
        points = make_ramp(5000, 0.0002)
        duration = points[-1].time - points[0].time
        out = compact(points, settings)
        self.assertLessEqual(len(out), duration / settings.min_interval + 2)
        self.assertEqual(out[-1], points[-1])

    def test_sparse_points_all_kept(self):
        points = [AutomationPoint(0.0, 0.0), AutomationPoint(0.5, 0.5), AutomationPoint(1.0, 1.0)]
        self.assertEqual(compact(points, PITCH_BEND_COMPACTION), points)

    def test_redundant_values_dropped(self):
        points = [AutomationPoint(t, 0.25) for t in (0.0, 0.5, 1.0, 2.0)]
        self.assertEqual(compact(points, PITCH_BEND_COMPACTION), [AutomationPoint(0.0, 0.25)])

    def test_change_within_epsilon_dropped(self):
        settings = CompactionSettings(min_interval=0.0, epsilon=0.01)
        points = [AutomationPoint(0.0, 0.5), AutomationPoint(1.0, 0.505), AutomationPoint(2.0, 0.6)]
        self.assertEqual(compact(points, settings), [AutomationPoint(0.0, 0.5), AutomationPoint(2.0, 0.6)])

    def test_unsorted_input(self):
        points = [AutomationPoint(1.0, 1.0), AutomationPoint(0.0, 0.0)]
        self.assertEqual(compact(points, PITCH_BEND_COMPACTION), [AutomationPoint(0.0, 0.0), AutomationPoint(1.0, 1.0)])

    def test_empty_and_single(self):
        self.assertEqual(compact([], PITCH_BEND_COMPACTION), [])
        one = [AutomationPoint(0.3, 0.1)]
        self.assertEqual(compact(one, PITCH_BEND_COMPACTION), one)

    def test_latest_value_wins_within_bucket(self):
        settings = CompactionSettings(min_interval=0.1, epsilon=0.0)
        points = [
            AutomationPoint(0.0, 0.0),
            AutomationPoint(0.5, 0.2),
            AutomationPoint(0.52, 0.4),
            AutomationPoint(0.55, 0.3),
        ]
        self.assertEqual(compact(points, settings), [AutomationPoint(0.0, 0.0), AutomationPoint(0.55, 0.3)])


class TestLatestAtOrBefore(unittest.TestCase):
    def test_lookup(self):
        points = [AutomationPoint(0.0, 0.1), AutomationPoint(1.0, 0.2), AutomationPoint(2.0, 0.3)]
        self.assertIsNone(latest_at_or_before(points, -0.1))
        self.assertEqual(latest_at_or_before(points, 0.0).value, 0.1)
        self.assertEqual(latest_at_or_before(points, 1.5).value, 0.2)
        self.assertEqual(latest_at_or_before(points, 99.0).value, 0.3)
        self.assertIsNone(latest_at_or_before([], 1.0))


class TestCompactionSettings(unittest.TestCase):
    def test_resolve_defaults(self):
        self.assertEqual(resolve_compaction(), DEFAULT_COMPACTION)

    def test_resolve_override(self):
        custom = CompactionSettings(min_interval=0.2, epsilon=0.0)
        out = resolve_compaction({STREAM_VOLUME: custom})
        self.assertEqual(out[STREAM_VOLUME], custom)
        self.assertEqual(out[STREAM_PITCH_BEND], PITCH_BEND_COMPACTION)

    def test_resolve_unknown_stream(self):
        with self.assertRaises(KeyError):
            resolve_compaction({"filter_cutoff": CompactionSettings(0.1, 0.0)})

    def test_from_intervals(self):
        out = compaction_from_intervals(pitch_bend_interval_ms=10)
        self.assertEqual(list(out), [STREAM_PITCH_BEND])
        self.assertAlmostEqual(out[STREAM_PITCH_BEND].min_interval, 0.01)
        self.assertEqual(out[STREAM_PITCH_BEND].epsilon, PITCH_BEND_COMPACTION.epsilon)
        cc = compaction_from_intervals(cc_interval_ms=50)
        self.assertNotIn(STREAM_PITCH_BEND, cc)
        self.assertAlmostEqual(cc[STREAM_VOLUME].min_interval, 0.05)
        self.assertEqual(compaction_from_intervals(), {})
