"""Sync, quality, stitching and standardization services."""

from crowdcut.services.cleanup import CleanupService, CleanupStats
from crowdcut.services.processing import ProcessingService
from crowdcut.services.quality import ProjectQualityReport, VideoQualityService
from crowdcut.services.standardize import StandardizationReport, StandardizationService
from crowdcut.services.stitching import VideoStitchingService
from crowdcut.services.sync import SynchronizationService, validate_sync_results

__all__ = [
    "CleanupService",
    "CleanupStats",
    "ProcessingService",
    "ProjectQualityReport",
    "StandardizationReport",
    "StandardizationService",
    "SynchronizationService",
    "VideoQualityService",
    "VideoStitchingService",
    "validate_sync_results",
]
