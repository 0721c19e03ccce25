"""Rules shared by the room manager and the action relay.

Nothing in here talks to the store or a channel, and nothing reads the clock:
callers pass `now` and `rng` in, so every rule is testable on its own.
"""
