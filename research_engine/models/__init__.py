from .research_run import ResearchRun, RunStatus, SearchMethod, ResearchScope
from .research_source import ResearchSource
from .research_insight import ResearchInsight
from .competitor_intel import CompetitorIntel
from .action_item import ActionItem, ActionPriority
from .lead import LeadData, Lead
from .user_settings import UserSettings
from .cached_extraction import CachedExtraction
from .step_checkpoint import ResearchStepCheckpoint
from .research_trace_event import ResearchTraceEvent
