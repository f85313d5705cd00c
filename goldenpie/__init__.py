"""
GoldenPie: kill/headshot Lightning rewards for a four-player N64 shooter.

Components:
    telemetry   - Emulator memory polling, event detection, payment dispatch
    payments    - Lightning payment providers (ZBD, LNbits, mock)
    auth        - LUD-22 address-request sessions binding slots to addresses
    engine      - RewardEngine: one game session end to end
    engine_api  - FastAPI control surface + WebSocket push events
"""

__version__ = "0.1.0"

from goldenpie.config import GoldenPieConfig, get_config, set_config

__all__ = [
    '__version__',
    'GoldenPieConfig',
    'get_config',
    'set_config',
]
