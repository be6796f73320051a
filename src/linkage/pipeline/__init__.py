"""
Linkage build pipeline.

Runs the stages of one build against the configured inputs:
  rule tables + entities -> validate -> build groups -> audit
"""

from .runner import LinkageRunner, main

__all__ = ['LinkageRunner', 'main']
