"""
Feedwatch - Price Feed Health Monitor

This module provides aggregation, stall detection and summaries for
datasource and on-chain oracle prices:
- PriceAggregator: Median consensus with outlier exclusion and quorum
- AggregationEngine: Per-pair aggregates and outlier alerts
- DatasourceStallDetector / OracleStallDetector: Flat-vs-market stall detection
- AlertManager: Open / refresh / resolve alert lifecycle
- HealthRollup / WindowLedger: Windowed health counters and completion flags
- SummaryDispatcher: Owner and administrator window digests
- FeedMonitor: Wires everything into one sweep
- fetchers: Config-driven datasource fetchers
"""

from .AggregationEngine import AggregationEngine
from .AlertManager import AlertManager
from .DatasourceStallDetector import DatasourceStallDetector
from .FeedMonitor import FeedMonitor, SweepReport
from .HealthRollup import HealthRollup, Outcome
from .Notifier import Delivery, LogNotifier, Notifier, WebhookNotifier
from .OracleStallDetector import OracleStallDetector
from .PairKey import PairKey
from .PriceAggregator import AggregationResult, PriceAggregator
from .Registry import Registry, StaticRegistry
from .RunLedger import RunLedger
from .Scheduler import Scheduler
from .SnapshotRecorder import SnapshotRecorder
from .Store import Store
from .SummaryDispatcher import SummaryDispatcher
from .Thresholds import Thresholds
from .WindowLedger import Audience, WindowLedger

__all__ = [
    "AggregationEngine",
    "AggregationResult",
    "AlertManager",
    "Audience",
    "DatasourceStallDetector",
    "Delivery",
    "FeedMonitor",
    "HealthRollup",
    "LogNotifier",
    "Notifier",
    "OracleStallDetector",
    "Outcome",
    "PairKey",
    "PriceAggregator",
    "Registry",
    "RunLedger",
    "Scheduler",
    "SnapshotRecorder",
    "StaticRegistry",
    "Store",
    "SummaryDispatcher",
    "SweepReport",
    "Thresholds",
    "WebhookNotifier",
    "WindowLedger",
]
