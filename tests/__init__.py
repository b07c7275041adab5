"""Test package for MonthFinance.

The settings instance is created when :mod:`MonthFinance.settings.lib` is first
imported, so the data directory is pointed at a scratch location before any
test module imports the package.
"""
import os
import tempfile

os.environ.setdefault('QT_QPA_PLATFORM', 'offscreen')
os.environ.setdefault('MONTHFINANCE_DATA_DIR', tempfile.mkdtemp(prefix='monthfinance_tests_'))
