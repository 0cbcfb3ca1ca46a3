"""knowledge-synth: incremental knowledge unit synthesis from embedded fragments."""

__version__ = "1.0.0"
