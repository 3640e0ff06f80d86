"""
Unit tests for the data model: activity catalogue, prediction parsing, fusion, Detection records.
Run from repo root: python -m pytest tests/ -v   or   python -m unittest discover -s tests -t . -v
"""
import unittest
from datetime import datetime

import numpy as np

from activity_capture.models import (
    ActivityClass,
    Detection,
    DetectionSource,
    FusionWeights,
    audio_supported_classes,
    best_prediction,
    fuse_predictions,
    image_supported_classes,
    parse_predictions,
)


class TestActivityClass(unittest.TestCase):
    """Catalogue order and lookups."""

    def test_twenty_six_activities_plus_unknown_last(self):
        classes = image_supported_classes()
        self.assertEqual(len(classes), 27)
        self.assertIs(classes[0], ActivityClass.CLEANING)
        self.assertIs(classes[-1], ActivityClass.UNKNOWN)

    def test_lookup_by_english_name_is_case_insensitive(self):
        self.assertIs(ActivityClass.from_english_name("cooking"), ActivityClass.COOKING)
        self.assertIs(ActivityClass.from_english_name(" Watching_TV "), ActivityClass.WATCHING_TV)
        self.assertIs(ActivityClass.from_english_name("juggling"), ActivityClass.UNKNOWN)
        self.assertIs(ActivityClass.from_english_name(None), ActivityClass.UNKNOWN)

    def test_lookup_by_id(self):
        self.assertIs(ActivityClass.from_id(3), ActivityClass.COOKING)
        self.assertIs(ActivityClass.from_id(0), ActivityClass.UNKNOWN)
        self.assertIs(ActivityClass.from_id(99), ActivityClass.UNKNOWN)
        self.assertEqual(ActivityClass.READING.french_name, "Lire")

    def test_audio_subset_excludes_silent_activities(self):
        audio = audio_supported_classes()
        self.assertEqual(len(audio), 22)
        for excluded in (ActivityClass.FEEDING, ActivityClass.IRONING, ActivityClass.PLAYING,
                         ActivityClass.SINGING, ActivityClass.UNKNOWN):
            self.assertNotIn(excluded, audio)


class TestPredictions(unittest.TestCase):

    def test_parse_maps_by_position_and_ignores_extra_values(self):
        preds = parse_predictions(np.array([[0.1, 0.7, 0.2]]))
        self.assertEqual(preds, {"CLEANING": 0.1, "CONVERSING": 0.7, "COOKING": 0.2})
        long_output = np.ones(40)
        self.assertEqual(len(parse_predictions(long_output)), 27)

    def test_best_prediction(self):
        self.assertEqual(best_prediction({"A": 0.2, "B": 0.9}), ("B", 0.9))
        with self.assertRaises(ValueError):
            best_prediction({})

    def test_weighted_fusion(self):
        fused = fuse_predictions({"A": 0.8, "B": 0.2}, {"A": 0.1, "B": 0.9}, FusionWeights(0.7, 0.3))
        self.assertAlmostEqual(fused["A"], 0.59)
        self.assertAlmostEqual(fused["B"], 0.41)
        activity, confidence = best_prediction(fused)
        self.assertEqual(activity, "A")
        self.assertAlmostEqual(confidence, 0.59)

    def test_fusion_class_missing_on_one_side_counts_as_zero(self):
        fused = fuse_predictions({"A": 1.0}, {"B": 1.0}, FusionWeights(0.7, 0.3))
        self.assertAlmostEqual(fused["A"], 0.7)
        self.assertAlmostEqual(fused["B"], 0.3)

    def test_fusion_weights_keep_configured_ratio(self):
        fused = fuse_predictions({"A": 1.0}, {"A": 1.0}, FusionWeights(2.0, 1.0))
        self.assertAlmostEqual(fused["A"], 3.0)
        with self.assertRaises(ValueError):
            FusionWeights(-0.1, 0.5)


class TestDetection(unittest.TestCase):

    def test_confidence_is_max_of_predictions(self):
        d = Detection.from_predictions({"READING": 0.3, "WRITING": 0.65}, DetectionSource.CAMERA, 0.9)
        self.assertEqual(d.predicted_activity, "WRITING")
        self.assertEqual(d.confidence, 0.65)
        self.assertTrue(d.person_detected)
        self.assertIsNone(d.fusion_weights)

    def test_predictions_are_copied(self):
        preds = {"READING": 0.9}
        d = Detection.from_predictions(preds, DetectionSource.CAMERA, 1.0)
        preds["READING"] = 0.0
        self.assertEqual(d.predictions["READING"], 0.9)
        with self.assertRaises(Exception):
            d.confidence = 0.1

    def test_dict_round_trip_with_fusion_weights(self):
        d = Detection.from_predictions({"EATING": 0.8, "COOKING": 0.1}, DetectionSource.FUSION, 0.75,
                                       fusion_weights=FusionWeights(0.7, 0.3),
                                       timestamp=datetime(2026, 3, 1, 12, 30, 5, 250000))
        data = d.to_dict()
        self.assertEqual(data["source"], "FUSION")
        self.assertEqual(data["fusion_weights"], {"image_weight": 0.7, "sound_weight": 0.3})
        self.assertEqual(Detection.from_dict(data), d)
        self.assertEqual(d.date_key, "2026-03-01")

    def test_from_dict_accepts_second_precision_timestamps(self):
        d = Detection.from_dict({"timestamp": "2026-03-01 08:00:00", "predicted_activity": "SLEEPING",
                                 "confidence": 0.7, "source": "microphone"})
        self.assertEqual(d.timestamp, datetime(2026, 3, 1, 8, 0, 0))
        self.assertIs(d.source, DetectionSource.MICROPHONE)
        self.assertEqual(d.predictions, {})

    def test_source_display_name(self):
        self.assertEqual(DetectionSource.FUSION.display_name, "Fusion Image/Audio")


if __name__ == "__main__":
    unittest.main()
