"""Unit tests for segmentation collaborators and mask files."""

import json
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

import numpy as np

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fishmass.preprocessing.segmentation import (
    SegmentationResult,
    StaticDetector,
    StaticSegmenter,
    fit_mask,
    load_detections,
    load_mask,
    load_segmentation_results,
    save_mask,
)


class TestMaskFiles(unittest.TestCase):
    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.mask = np.zeros((60, 80), dtype=bool)
        self.mask[10:30, 20:60] = True

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_save_and_load_mask(self):
        path = self.temp_dir / "img_fish_0_mask.png"
        save_mask(self.mask, path)
        np.testing.assert_array_equal(load_mask(path), self.mask)

    def test_fit_mask_resizes_nearest(self):
        fitted = fit_mask(self.mask.astype(np.uint8) * 255, (120, 160))
        self.assertEqual(fitted.shape, (120, 160))
        self.assertEqual(fitted.dtype, bool)
        self.assertEqual(int(fitted.sum()), int(self.mask.sum()) * 4)

        squeezed = fit_mask(self.mask[np.newaxis], (60, 80))
        np.testing.assert_array_equal(squeezed, self.mask)

    def test_load_segmentation_results(self):
        other = np.zeros((60, 80), dtype=bool)
        other[40:50, 5:15] = True
        save_mask(self.mask, self.temp_dir / "img_fish_0_mask.png")
        save_mask(other, self.temp_dir / "img_fish_1_mask.png")
        save_mask(np.zeros((60, 80), dtype=bool), self.temp_dir / "img_fish_2_mask.png")
        save_mask(self.mask, self.temp_dir / "img_coin_mask.png")
        save_mask(self.mask, self.temp_dir / "other_fish_0_mask.png")

        fish = load_segmentation_results(self.temp_dir, "img", "fish", label="Fish")
        self.assertEqual(len(fish), 2)
        self.assertEqual(fish[0].class_name, "Fish")
        self.assertEqual(fish[0].box, (0.25, 10 / 60, 0.75, 0.5))
        np.testing.assert_array_equal(fish[1].mask, other)

        coin = load_segmentation_results(self.temp_dir, "img", "coin", shape=(120, 160))
        self.assertEqual(len(coin), 1)
        self.assertEqual(coin[0].class_name, "coin")
        self.assertEqual(coin[0].mask.shape, (120, 160))

        self.assertEqual(load_segmentation_results(self.temp_dir, "img", "pile"), [])

    def test_load_detections(self):
        path = self.temp_dir / "img.json"
        path.write_text(json.dumps([
            {"x1": 0.1, "y1": 0.2, "x2": 0.5, "y2": 0.6, "class_name": "rohu", "confidence": 0.9},
            {"x1": 0.5, "y1": 0.5, "x2": 0.9, "y2": 0.9, "class_name": "catla"},
        ]))
        detections = load_detections(path)
        self.assertEqual([d.class_name for d in detections], ["rohu", "catla"])
        self.assertEqual(detections[0].box, (0.1, 0.2, 0.5, 0.6))
        self.assertEqual(detections[1].confidence, 1.0)

        bad = self.temp_dir / "bad.json"
        bad.write_text(json.dumps({"class_name": "rohu"}))
        with self.assertRaises(ValueError):
            load_detections(bad)


class TestStaticCollaborators(unittest.TestCase):
    def test_static_results_are_copied(self):
        result = SegmentationResult(np.ones((2, 2), dtype=bool), (0, 0, 1, 1), "Fish")
        segmenter = StaticSegmenter([result])
        first = segmenter.segment(None)
        first.clear()
        self.assertEqual(len(segmenter.segment(None)), 1)

        detector = StaticDetector([])
        self.assertEqual(detector.detect(None), [])


if __name__ == '__main__':
    unittest.main()
