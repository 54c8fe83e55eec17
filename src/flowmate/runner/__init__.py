"""Worker entrypoint executed once per task (``python -m flowmate.runner``).

The runner reads its task payload, drives the agent CLI, and reports progress
and the final outcome to the orchestrator over the stderr side channel.
"""
