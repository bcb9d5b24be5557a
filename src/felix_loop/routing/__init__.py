"""Per-task model selection: scoring, tiers, history learning and escalation."""
