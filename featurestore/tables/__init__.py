"""
Table modules. Each exposes plain functions taking the Client first and an
optional DbSession, then a keyword-only ``cancel`` event.
"""
