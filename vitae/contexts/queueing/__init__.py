"""
Queueing Context

Responsibilities:
- Admits extraction jobs with a visible queue position and wait estimate
- Serializes processing behind a single global worker
- Drives every claimed job to a terminal state with a caller-safe message

Owns: Job store, admission and worker loop, raw-text provider interface
Never: Talks to the LLM directly (delegates to the extraction pipeline)
"""
