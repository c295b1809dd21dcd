"""
TISS Claims Engine
==================

Claims lifecycle and glosa (denial) risk engine for medical clinics.

This package assembles billable procedure guides into operator-bound
batches, generates the interchange file, ingests operator return files
and predicts denial risk before submission.
"""

__version__ = "0.1.0"
__author__ = "Clinigo"
