"""Resumable streaming chat engine."""
