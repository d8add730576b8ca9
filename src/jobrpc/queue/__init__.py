"""Durable job queue backing remote calls.

A job record is created by the caller, claimed and finished by a daemon, and
removed only by the store's expiry sweep. Execution is at-least-once: a
record left ``processing`` past the staleness window is claimed again, so
handlers must tolerate running more than once for the same arguments.
"""
