from django.apps import AppConfig


class PtwAppConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'ptw_app'
    verbose_name = 'Permit to Work'

    def ready(self):
        from .events import relay, log_event
        relay.subscribe(log_event)
