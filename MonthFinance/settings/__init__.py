"""
Settings package for MonthFinance.

- :mod:`MonthFinance.settings.lib` – Settings schema, validation, file paths and the :class:`SettingsAPI`.
"""
