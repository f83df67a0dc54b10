"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # WHOOP has no push delivery here; poll every connected user.
    'sync-all-whoop-users': {
        'task': 'tasks.sync_all_whoop_users',
        'schedule': crontab(minute='*/30'),  # Every 30 minutes
    },
    # Abandoned handshakes leave their state rows behind.
    'purge-expired-oauth-states': {
        'task': 'tasks.purge_expired_oauth_states',
        'schedule': crontab(minute=15),  # Hourly, at :15
    },
}
