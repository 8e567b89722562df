"""
Mix Lobby Service - authoritative coordinator for 5v5 pickup games

Responsibilities:
- Mix registry and lifecycle (waiting -> sorting -> live -> finished)
- Roster slots with idempotent joins and a hard capacity
- Skill-balanced team assignment
- Turn-based map veto
- Rating credit for the winning team
- Change notifications for connected observers
"""
