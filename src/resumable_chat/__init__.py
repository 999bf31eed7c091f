"""Resumable streaming chat service."""
