from __future__ import annotations


class PipelineError(RuntimeError):
    """Job-level failure. Always ends in a terminal ``failed`` write."""

    def describe(self) -> str:
        return f"{type(self).__name__}: {self}"


class TabLoadTimeout(PipelineError):
    pass


class NavigationError(PipelineError):
    pass


class AgentUnresponsive(PipelineError):
    pass


class CommunicationFailure(PipelineError):
    pass


class FormNotFound(PipelineError):
    pass


class SubmissionTimeout(PipelineError):
    pass
