"""
Natural-language parsing of moderator instructions.

- **temporal_parser.py**: Delay ("after 2 minutes") and duration ("for 10
  minutes") extraction, plus human-readable duration formatting.
- **intent_parser.py**: Table-driven extraction of a full ``ComplexIntent``
  with a deterministic confidence score.
"""
