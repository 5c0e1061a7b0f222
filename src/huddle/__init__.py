"""Huddle: short-code rendezvous and admission for peer sessions."""

__version__ = "0.1.0"
