"""Gunicorn settings for serving the dispensary API (``gunicorn -c gunicorn.conf.py``)."""
import os

wsgi_app = "app:app"
bind = os.getenv("GUNICORN_BIND", "0.0.0.0:5000")

workers = int(os.getenv("GUNICORN_WORKERS", "2"))
timeout = int(os.getenv("GUNICORN_TIMEOUT", "60"))

accesslog = os.getenv("GUNICORN_ACCESS_LOGFILE", "-")
errorlog = os.getenv("GUNICORN_ERROR_LOGFILE", "-")
loglevel = os.getenv("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s req=%({x-request-id}i)s'

forwarded_allow_ips = os.getenv("GUNICORN_FORWARDED_ALLOW_IPS", "*")
