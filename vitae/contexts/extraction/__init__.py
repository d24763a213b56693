"""
Extraction Context

Responsibilities:
- Runs the three-step extraction pipeline (basic info, professional, additional)
- Keeps per-run session state and derives known facts between steps
- Assembles the final structured profile with confidence scores

Owns: Prompt templates, session store, known-facts projection
Never: Schedules work or decides admission order (see queueing context)
"""
