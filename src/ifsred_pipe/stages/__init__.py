"""Reduction stages.

Every stage is a plain function ``stage(state, params, ...)`` returning the
new :class:`~ifsred_pipe.frame.FrameState` and the
:class:`~ifsred_pipe.record.StageDelta` that documents the decision.
"""
