"""Execution orchestration core.

An inbound prompt becomes one budgeted, isolated worker process: the budget
tracker admits it, a worker backend launches it, the side channel reports
progress and the final result, and the execution service settles the durable
execution row exactly once, whichever of result, timeout or process exit
arrives first.

Workers run either as containers (production) or as local subprocesses
(development). Both speak the same stderr side channel, so the service does not
know which one it is talking to.
"""
