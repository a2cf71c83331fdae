"""Dispatch engine, inbound handler, scheduler and orchestrator."""
