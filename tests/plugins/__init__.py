"""
Tests for the incremental watermark transfer plugin package.

These tests mock every database connection; no live SQL Server or
PostgreSQL instance is needed.
"""

import os
import sys

# Add plugins directory to Python path (Airflow does this automatically at runtime)
plugins_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..', 'plugins'))
if plugins_dir not in sys.path:
    sys.path.insert(0, plugins_dir)
