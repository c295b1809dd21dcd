"""Reporting over settled guides."""

from tiss_claims.reports.loss_analysis import LossAnalysis, ReportService, loss_analysis

__all__ = ["LossAnalysis", "ReportService", "loss_analysis"]
