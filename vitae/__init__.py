"""
VITAE - Résumé extraction pipeline with admission-controlled job queue

Turns free-form résumé text into a validated structured profile through several
dependent calls to a pluggable text-generation backend, and serializes
concurrent extraction requests behind a single global worker.

Architecture:
- Extraction Context: session memory, known facts, the three-step pipeline
- Queueing Context: job store, admission control, the single worker loop
- Utils: text-generation client, response repair, config, logging
"""

__version__ = "0.1.0"
