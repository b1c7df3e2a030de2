"""
Data models for pipeline manifests and pipeline execution runs.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.timestamp_utils import to_iso, utc_now

# Sentinel pipeline id selecting the built-in no-op pipeline
EMPTY_PIPELINE_ID = str(uuid.UUID(int=0))


class PipelineStatus(str, Enum):
    """Lifecycle of one pipeline run."""
    PENDING = 'Pending'
    RUNNING = 'Running'
    PROCESSING = 'Processing'
    COMPLETED = 'Completed'
    FAILED = 'Failed'

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStatus.COMPLETED, PipelineStatus.FAILED)


class StageResult(str, Enum):
    """Outcome of a single stage attempt."""
    SUCCESS = 'Success'
    ERROR = 'Error'
    SKIPPED = 'Skipped'


@dataclass
class ComponentConfiguration:
    """Configuration for a single stage within a pipeline manifest."""
    name: str
    type: str  # Stage type discriminator resolved through the stage registry
    settings: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ComponentConfiguration':
        settings = data.get('settings', data.get('config')) or {}
        return cls(name=data.get('name', ''), type=data.get('type', ''), settings=dict(settings))

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'type': self.type, 'settings': self.settings}


@dataclass
class PipelineManifest:
    """Definition of a pipeline: an ordered list of stage configurations."""
    id: str
    name: str = ''
    description: str = ''
    components: List[ComponentConfiguration] = field(default_factory=list)

    @classmethod
    def empty(cls) -> 'PipelineManifest':
        """The built-in zero-component manifest used for the sentinel pipeline id."""
        return cls(id=EMPTY_PIPELINE_ID,
                   name='Empty Pipeline',
                   description='This is an empty pipeline executed when no specific pipeline ID is provided.')

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PipelineManifest':
        return cls(id=str(data.get('id') or ''),
                   name=data.get('name', ''),
                   description=data.get('description', ''),
                   components=[ComponentConfiguration.from_dict(c) for c in data.get('components') or []])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'components': [component.to_dict() for component in self.components]
        }


@dataclass
class PipelineExecutionRequest:
    """Data required to start a pipeline run."""
    pipeline_id: str = EMPTY_PIPELINE_ID
    user_input: str = ''
    session_metadata: Dict[str, Any] = field(default_factory=dict)
    response_channel_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ContextProvenance:
    """Where a context chunk came from."""
    CHAT_HISTORY = 'Chat History'

    source: str = ''
    timestamp: datetime = field(default_factory=utc_now)
    original_id: str = ''
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ContextChunk:
    """A piece of context accumulated on the execution state by a stage."""
    type: str
    content: str
    subtype: Optional[str] = None
    relevance_score: float = 0.0
    provenance: ContextProvenance = field(default_factory=ContextProvenance)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'subtype': self.subtype,
            'content': self.content,
            'relevance_score': self.relevance_score,
            'provenance': {
                'source': self.provenance.source,
                'timestamp': to_iso(self.provenance.timestamp),
                'original_id': self.provenance.original_id,
                'metadata': self.provenance.metadata
            }
        }


@dataclass
class PipelineStageHistory:
    """One completed stage attempt."""
    stage_name: str
    result: StageResult
    timestamp: datetime = field(default_factory=utc_now)
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stage_name': self.stage_name,
            'result': self.result.value,
            'timestamp': to_iso(self.timestamp),
            'message': self.message
        }


@dataclass
class PipelineExecutionState:
    """Accumulating state threaded through the stages of one run.

    Stages may append to ``context`` and ``history`` but never remove entries.
    """
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    pipeline_id: str = EMPTY_PIPELINE_ID
    request: PipelineExecutionRequest = field(default_factory=PipelineExecutionRequest)
    context: List[ContextChunk] = field(default_factory=list)
    history: List[PipelineStageHistory] = field(default_factory=list)


@dataclass
class PipelineExecutionStatus:
    """Current status and stage history of one run, shared with polling callers."""
    run_id: str
    pipeline_id: str
    status: PipelineStatus = PipelineStatus.PENDING
    current_stage_name: Optional[str] = None
    current_stage_start_time: Optional[datetime] = None
    overall_start_time: datetime = field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    message: Optional[str] = None
    stage_history: List[PipelineStageHistory] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def mark_running(self) -> None:
        with self._lock:
            self.status = PipelineStatus.RUNNING
            self.current_stage_name = 'StartingExecution'
            self.current_stage_start_time = utc_now()

    def enter_stage(self, stage_name: str) -> None:
        with self._lock:
            self.status = PipelineStatus.PROCESSING
            self.current_stage_name = stage_name
            self.current_stage_start_time = utc_now()

    def add_stage_history(self, stage_name: str, result: StageResult, message: Optional[str] = None) -> PipelineStageHistory:
        """Append an entry to the stage history."""
        entry = PipelineStageHistory(stage_name=stage_name, result=result, message=message)
        with self._lock:
            self.stage_history.append(entry)
        return entry

    def finish(self, status: PipelineStatus, message: Optional[str] = None, stage_name: Optional[str] = None) -> None:
        """Move to a terminal state. The end time is only ever set once."""
        with self._lock:
            if stage_name is not None:
                self.current_stage_name = stage_name
            self.status = status
            if message is not None:
                self.message = message
            if self.end_time is None:
                self.end_time = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            history = [entry.to_dict() for entry in self.stage_history]
            return {
                'run_id': self.run_id,
                'pipeline_id': self.pipeline_id,
                'status': self.status.value,
                'current_stage_name': self.current_stage_name,
                'current_stage_start_time': to_iso(self.current_stage_start_time) if self.current_stage_start_time else None,
                'overall_start_time': to_iso(self.overall_start_time),
                'end_time': to_iso(self.end_time) if self.end_time else None,
                'message': self.message,
                'stage_history': history
            }
