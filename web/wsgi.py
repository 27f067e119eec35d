"""WSGI entrypoint used by Gunicorn.

Run: `gunicorn -b 0.0.0.0:5000 --chdir web wsgi:app`
"""

from app import app as app

# Common WSGI convention for other servers/tools.
application = app
