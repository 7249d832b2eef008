"""
Vision pipeline package:
- lexicon: food / junk vocabulary and lookup predicates
- canonical: name canonicalization and fuzzy similarity
- fusion: merge vision detections with GPT names
- detector: Google Vision and ONNX YOLO primary detectors
- portions: default grams-per-item estimator
- pipeline: budget-gated orchestrator (vision-first / GPT-first)
"""
