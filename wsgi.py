"""
WSGI entry point for the Naam Jaap web service.

Point the host's WSGI configuration at this file; it exposes ``application``.
  - Source code / working dir:  /home/<your-username>/naam-jaap
  - Environment:                SECRET_KEY, DATABASE_URL, LLM_API_KEY (or a .env file)
"""
import sys
import os

# Make sure the project directory is on the path
project_dir = os.path.dirname(os.path.abspath(__file__))
if project_dir not in sys.path:
    sys.path.insert(0, project_dir)

from app import app as application  # noqa: F401,E402  (WSGI servers look for 'application')
