"""Serverless and local entry point for the HTTP API."""
