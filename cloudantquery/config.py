"""
cloudantquery.config

Defaults shared by every client.
"""

import os

defaults = {
    # account host, filled in with the username
    "host": "https://%s.cloudant.com",
    # seconds; handed to httplib2.Http
    "timeout": 60,
    # httplib2 cache directory, None disables caching
    "cache": None,
    "disable_ssl_certificate_validation": False,
}

ENV_USERNAME = 'CLOUDANT_USER_NAME'
ENV_APIKEY = 'CLOUDANT_API_KEY'
ENV_PASSWORD = 'CLOUDANT_PASSWORD'
ENV_URL = 'CLOUDANT_URL'
ENV_DATABASE = 'CLOUDANT_DATABASE'


def from_environ(environ=None):
    """Collect client keyword arguments from CLOUDANT_* environment
    variables. Unset variables are left out."""
    if environ is None:
        environ = os.environ
    settings = {'username': environ.get(ENV_USERNAME),
                'apikey': environ.get(ENV_APIKEY),
                'password': environ.get(ENV_PASSWORD),
                'url': environ.get(ENV_URL)}
    return dict((k, v) for k, v in settings.items() if v)
