"""Feed harvester: scroll-driven record collection from infinitely scrolling feeds.

MODULES:
    - bootstrap: settings, logging, metrics and application context
    - controller: collection state machine (start / pause / resume / stop)
    - extractor + selectors: heuristic record extraction
    - readiness, scroll, store, stop: the per-round pipeline stages
    - repository, export: persistence and CSV / JSON / Excel output
    - service: command surface shared by the HTTP API and the CLI
    - __main__: CLI (run / replay / export / serve / login)
"""

from .models import CollectionState, CommandResult, Record, SessionConfig, StopReason  # noqa: F401

__version__ = "0.1.0"
