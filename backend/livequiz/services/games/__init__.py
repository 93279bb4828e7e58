"""Game domain services: session scheduling, flows and scoring.

This package holds the quiz engine. Socket handlers and HTTP routes call
into it; it talks back to clients only through the emitter and batch
service it is given, keeping transport concerns out of game mechanics.
"""
