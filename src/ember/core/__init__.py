"""
Orchestration core for Ember.

Agent registry, session store, reconciliation, git workspace checkpoints,
output validation and the retrying agent runner.
"""
