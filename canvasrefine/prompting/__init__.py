"""Prompting package.

Deterministic text construction for refinement instructions and for the
vision-description and prompt-enrichment chat requests. It performs no I/O and
no model invocation; length budgeting for refinement prompts lives here.
"""
