"""
Test support utilities for dockbase tests.

Fakes for the two external collaborators: the container engine
(:mod:`tests._support.fake_engine`) and the source PostgreSQL server
(:mod:`tests._support.fake_source`).
"""
