"""Qwen OAuth backend.

Device authorization flow with PKCE, credential cache, single-flight token
refresh and the content generator that injects per-call credentials.
"""
