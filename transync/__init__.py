"""Transync - translation key synchronization and quality-evaluation pipeline."""
