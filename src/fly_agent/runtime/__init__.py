"""Supervision core for one agent run against an opencode server.

The supervisor owns the server and the session.  Two loops observe the
session while the agent works:

- the event stream consumer (background thread) turns the server-sent
  event feed into deduplicated progress entries;
- the completion poller (calling thread) decides when the task is done,
  and is the only place where an operator stop request is noticed.

Neither loop mutates shared state; they report back by emitting progress
entries or raising a terminal outcome.
"""
