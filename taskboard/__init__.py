# Task board engine: file-backed boards, columns and cards shared by every front-end
#
# Components:
#   schema.py       - Data model (Board, Column, Card), layout detection, timestamps
#   validator.py    - Structural checks run before every write
#   positions.py    - Dense per-column card ordering
#   dependencies.py - Card dependency integrity and reverse lookup
#   projector.py    - Token-conscious board views (full/summary/compact/cards-only)
#   store.py        - JSON file persistence, backups, archives
#   ratelimit.py    - Sliding-window admission control per client
#   query.py        - Card filtering, search, sort and pagination
#   events.py       - Change events for the webhook collaborator
#   webhooks.py     - HTTP fan-out of change events
#   config.py       - YAML + env configuration
#   service.py      - The shared core called by server.py, cli.py and tools.py
#   server.py       - Flask JSON API
#   cli.py          - argparse command line
#   tools.py        - Agent tool invocations

__version__ = "0.4.0"
