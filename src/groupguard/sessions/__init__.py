"""Tenant session lifecycle: state graph, per-session workers, orchestration."""
