"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db init       # first time only (creates migrations/)
    flask db migrate -m "description"
    flask db upgrade

    flask recalculate-stats 42
    flask run-job campaign_reminders
"""

from accesscert import create_app

app = create_app()
