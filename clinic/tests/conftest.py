import pytest
from django.core.cache import cache


@pytest.fixture(autouse=True)
def _fast_campaigns(settings):
    """No sleeping, no background threads and an in-memory mailbox."""
    settings.CAMPAIGN_BATCH_DELAY = 0
    settings.CAMPAIGN_EMAIL_DELAY = 0
    settings.CAMPAIGN_DISPATCH = 'manual'
    settings.EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
    settings.PUBLIC_BASE_URL = 'https://practice.example.com'
    settings.CHANNEL_LAYERS = {'default': {'BACKEND': 'channels.layers.InMemoryChannelLayer'}}
    cache.clear()
    yield
    cache.clear()
