"""Record Layer - turning page events into steps."""

from ditto.layers.record.recorder import RecorderState, RecordingStateMachine, StepCollector

__all__ = ["RecorderState", "RecordingStateMachine", "StepCollector"]
