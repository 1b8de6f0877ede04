from django.apps import AppConfig


class DogsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.dogs"
    verbose_name = "Dogs"
