"""Directive execution engine and signal bus.

Modules include configuration, the signal and directive stores, the signal
bus, the directive runner and handler registry, signal replay and fan-out,
ORM models, validation, metrics, tracing and RabbitMQ helpers.
"""
