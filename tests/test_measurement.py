"""Unit tests for shape measurement."""

import sys
import unittest
from pathlib import Path

import cv2
import numpy as np

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fishmass.preprocessing.geometry import OpenCVGeometry, ScikitImageGeometry, rect_corners
from fishmass.preprocessing.measurement import (
    Measurement,
    ShapeMeasurer,
    mask_bounding_box,
)


class TestShapeMeasurer(unittest.TestCase):
    def setUp(self):
        # 100 x 40 rectangle centred at (99.5, 99.5) on a canvas with room to rotate
        self.mask = np.zeros((200, 200), dtype=bool)
        self.mask[80:120, 50:150] = True

        self.exact = ShapeMeasurer(geometry=ScikitImageGeometry())
        self.opencv = ShapeMeasurer(geometry=OpenCVGeometry())

    def test_axis_aligned_rectangle_full_ratio(self):
        expected_volume = 100 * (40 ** 2 * np.pi / 4)

        m = self.exact.measure(self.mask, 1.0, 1.0)
        self.assertAlmostEqual(m.length_units, 100.0, places=6)
        self.assertAlmostEqual(m.depth_units, 40.0, places=6)
        self.assertAlmostEqual(m.volume_units, expected_volume, places=3)

        m = self.opencv.measure(self.mask, 1.0, 1.0)
        self.assertAlmostEqual(m.length_units, 100.0, delta=1.5)
        self.assertAlmostEqual(m.depth_units, 40.0, delta=1.5)
        self.assertAlmostEqual(m.volume_units, expected_volume, places=3)

    def test_end_to_end_rectangle(self):
        expected_volume = 100 * (40 ** 2 * np.pi * 0.5 / 4) / 1000

        m = self.exact.measure(self.mask, 0.5, 10.0)
        self.assertAlmostEqual(m.length_units, 10.0, places=6)
        self.assertAlmostEqual(m.depth_units, 4.0, places=6)
        self.assertAlmostEqual(m.volume_units, expected_volume, places=6)
        self.assertAlmostEqual(m.volume_units, 62.83, delta=0.01)

        m = self.opencv.measure(self.mask, 0.5, 10.0)
        self.assertAlmostEqual(m.length_units, 10.0, delta=0.15)
        self.assertAlmostEqual(m.depth_units, 4.0, delta=0.15)
        self.assertAlmostEqual(m.volume_units, expected_volume, places=6)

    def test_empty_mask_gives_zero_measurement(self):
        empty = np.zeros((50, 50), dtype=bool)
        for ppu in (1.0, 10.0, 0.0):
            for measurer in (self.exact, self.opencv):
                m = measurer.measure(empty, 0.5, ppu)
                self.assertEqual(m, Measurement(0.0, 0.0, 0.0, None))
                self.assertTrue(m.is_empty)

    def test_non_positive_scale_gives_zero_measurement(self):
        for ppu in (0.0, -5.0):
            m = self.opencv.measure(self.mask, 0.5, ppu)
            self.assertEqual(m, Measurement.zero())

    def test_invalid_arguments(self):
        with self.assertRaises(ValueError):
            self.opencv.measure(None, 0.5, 10.0)
        for ratio in (0.0, -0.1, 1.5):
            with self.assertRaises(ValueError):
                self.opencv.measure(self.mask, ratio, 10.0)
        with self.assertRaises(ValueError):
            ShapeMeasurer(default_ratio=0.0)

    def test_mask_formats_measure_the_same(self):
        reference = self.exact.measure(self.mask, 0.5, 10.0)
        for mask in (
            self.mask.astype(np.uint8),
            self.mask.astype(np.uint8) * 255,
            self.mask.astype(np.float32) * 0.9,
        ):
            m = self.exact.measure(mask, 0.5, 10.0)
            self.assertAlmostEqual(m.volume_units, reference.volume_units, places=6)
            self.assertAlmostEqual(m.length_units, reference.length_units, places=6)

    def test_length_is_longest_side(self):
        tall = np.zeros((200, 200), dtype=bool)
        tall[50:150, 80:120] = True
        for measurer in (self.exact, self.opencv):
            m = measurer.measure(tall, 1.0, 1.0)
            self.assertGreaterEqual(m.length_units, m.depth_units)
            self.assertAlmostEqual(m.length_units, 100.0, delta=1.5)
            self.assertAlmostEqual(m.volume_units, 100 * (40 ** 2 * np.pi / 4), places=3)

    def test_rotated_object_matches_axis_aligned(self):
        aligned = np.zeros((240, 240), dtype=np.uint8)
        aligned[100:140, 60:180] = 1
        rotated = np.zeros((240, 240), dtype=np.uint8)
        corners = np.round(np.array(rect_corners((120.0, 120.0), 120, 40, 35))).astype(np.int32)
        cv2.fillPoly(rotated, [corners], 1)

        for measurer in (self.exact, self.opencv):
            a = measurer.measure(aligned, 0.5, 4.0)
            r = measurer.measure(rotated, 0.5, 4.0)
            self.assertAlmostEqual(r.length_units, a.length_units, delta=0.75)
            self.assertAlmostEqual(r.depth_units, a.depth_units, delta=0.75)
            self.assertAlmostEqual(r.volume_units / a.volume_units, 1.0, delta=0.15)

    def test_volume_is_linear_in_ratio(self):
        full = self.exact.measure(self.mask, 1.0, 10.0)
        quarter = self.exact.measure(self.mask, 0.25, 10.0)
        self.assertAlmostEqual(quarter.volume_units * 4, full.volume_units, places=6)
        self.assertEqual(quarter.length_units, full.length_units)

    def test_corners_are_reported(self):
        m = self.opencv.measure(self.mask, 0.5, 10.0)
        self.assertEqual(len(m.corners), 4)
        xs = [x for x, _ in m.corners]
        self.assertAlmostEqual(min(xs), 50, delta=1)
        self.assertAlmostEqual(max(xs), 149, delta=1)


class TestTwoPassMeasurement(unittest.TestCase):
    def setUp(self):
        self.mask = np.zeros((200, 200), dtype=bool)
        self.mask[80:120, 50:150] = True
        self.measurer = ShapeMeasurer(geometry=ScikitImageGeometry(), default_ratio=0.5)

    def test_mask_bounding_box(self):
        self.assertEqual(mask_bounding_box(self.mask), (0.25, 0.4, 0.75, 0.6))
        self.assertEqual(mask_bounding_box(np.zeros((10, 10))), (0.0, 0.0, 0.0, 0.0))

    def test_provisional_uses_default_ratio_and_mask_box(self):
        provisional = self.measurer.measure_provisional(self.mask, 10.0, "Fish")
        self.assertEqual(provisional.cross_section_ratio, 0.5)
        self.assertEqual(provisional.class_name, "Fish")
        self.assertEqual(provisional.box, (0.25, 0.4, 0.75, 0.6))
        self.assertAlmostEqual(provisional.measurement.volume_units, 62.83, delta=0.01)

    def test_provisional_prefers_collaborator_box(self):
        provisional = self.measurer.measure_provisional(
            self.mask, 10.0, "Fish", box=(0.2, 0.3, 0.8, 0.7)
        )
        self.assertEqual(provisional.box, (0.2, 0.3, 0.8, 0.7))

    def test_finalize_remeasures_with_species_ratio(self):
        provisional = self.measurer.measure_provisional(self.mask, 10.0, "Fish")
        final = self.measurer.finalize(provisional, self.mask, "Pomfret", 0.15, 10.0)

        self.assertEqual(final.species, "Pomfret")
        self.assertEqual(final.cross_section_ratio, 0.15)
        self.assertEqual(final.box, provisional.box)
        self.assertAlmostEqual(
            final.measurement.volume_units,
            provisional.measurement.volume_units * 0.15 / 0.5,
            places=6,
        )
        self.assertEqual(final.measurement.length_units, provisional.measurement.length_units)

    def test_finalize_with_same_ratio_keeps_measurement(self):
        provisional = self.measurer.measure_provisional(self.mask, 10.0, "Fish")
        final = self.measurer.finalize(provisional, self.mask, "Sardine", 0.5, 10.0)
        self.assertIs(final.measurement, provisional.measurement)


if __name__ == '__main__':
    unittest.main()
