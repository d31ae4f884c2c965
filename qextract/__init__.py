"""
Exam Question Extractor
=======================
Batch extraction of multiple-choice questions from scanned exam PDFs.

Architecture:
    - Calibration: Two operator-drawn boxes (question, answer) at a fixed render scale
    - Rasterizer: Renders each page with PyMuPDF and crops both regions
    - Answer Detector: Reads the correct-answer letter from the text layer, OCR as fallback
    - Pipeline: Per-page and per-file orchestration with bounded page concurrency
    - Job Queue: FIFO, one file at a time, with progress reporting and cancellation

Version: 1.0.0
"""

__version__ = "1.0.0"
