"""Core engine components.

This module exports the main building blocks:
- Normalizer: Maps provider payloads onto canonical issues
- ViewPipeline: Search, filter, sort and group in one pass
- SelectionTracker: Visibility-independent selection
- SessionStore: Per-issue fix-run lifecycle and subscriptions
- StreamReconciler: Decodes agent output into activities
- Dispatcher: Launches fix runs and routes their output
- TagRegistry: User tags assigned to issues
- preview_processing: Cost, time and warnings before a dispatch
- TriageService: Orchestrates all of the above
"""

from triage_engine.core.dispatcher import Dispatcher, ProcessingHandle
from triage_engine.core.event_stream import SessionEventStream, format_sse, parse_sse
from triage_engine.core.export import ExportFormat, export_issues
from triage_engine.core.filters import FilterController, filter_issues
from triage_engine.core.grouping import GroupingState, group_issues
from triage_engine.core.history import HistoryEntry, HistoryFilter, ProcessingHistory
from triage_engine.core.normalizer import normalize_issue, normalize_issues
from triage_engine.core.options import PRESETS, get_preset, preview_processing
from triage_engine.core.pipeline import SavedView, ViewPipeline
from triage_engine.core.reconciler import StreamReconciler, parse_event
from triage_engine.core.search import SearchHistory, search
from triage_engine.core.selection import SelectionTracker
from triage_engine.core.service import TriageService, create_service
from triage_engine.core.sessions import SessionStore, get_session_store, reset_session_store
from triage_engine.core.sorting import SortController, sort_issues
from triage_engine.core.stats import DashboardStats, calculate_stats
from triage_engine.core.tags import Tag, TagRegistry

__all__ = [
    "DashboardStats",
    "Dispatcher",
    "ExportFormat",
    "FilterController",
    "GroupingState",
    "HistoryEntry",
    "HistoryFilter",
    "ProcessingHandle",
    "PRESETS",
    "ProcessingHistory",
    "SavedView",
    "SearchHistory",
    "SelectionTracker",
    "SessionEventStream",
    "SessionStore",
    "SortController",
    "StreamReconciler",
    "Tag",
    "TagRegistry",
    "TriageService",
    "calculate_stats",
    "create_service",
    "export_issues",
    "filter_issues",
    "format_sse",
    "get_preset",
    "get_session_store",
    "group_issues",
    "normalize_issue",
    "normalize_issues",
    "parse_event",
    "parse_sse",
    "preview_processing",
    "reset_session_store",
    "search",
    "sort_issues",
]
