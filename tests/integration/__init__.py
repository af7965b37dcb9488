"""
labstore — integration test package

File: tests/integration/__init__.py

Purpose
- Test package marker; end-to-end scenarios run against real store files under ``tmp_path``.
"""
