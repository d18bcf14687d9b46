from .crawl_job import CrawlJob, JobStatus
from .crawl_run import CrawlRun
from .player import Player, AliasHistory
from .match import Match, MatchParticipant, RawMatchPayload, Outcome

__all__ = [
    "CrawlJob",
    "JobStatus",
    "CrawlRun",
    "Player",
    "AliasHistory",
    "Match",
    "MatchParticipant",
    "RawMatchPayload",
    "Outcome",
]
