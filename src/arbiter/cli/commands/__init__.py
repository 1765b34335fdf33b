"""CLI command implementations for Arbiter.

- config: create and inspect ~/.arbiter/config.yaml
- query: ask and feedback
- report: stats and curriculum
- learn: DPO, GEPA and LIMI jobs, golden examples and experiments
"""
