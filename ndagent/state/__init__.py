"""Durable agent state and device signing key storage."""