"""Firestore client for the review store and the job tracker (API and worker)."""

import json
import logging
import os

import firebase_admin
from firebase_admin import credentials, firestore

logger = logging.getLogger(__name__)


def _load_credentials(value: str) -> credentials.Certificate:
    """``SERVICE_FILE_LOC`` holds either the service-account JSON or a path to it."""
    if value.strip().startswith("{"):
        return credentials.Certificate(json.loads(value))
    return credentials.Certificate(value)


def get_firestore_client():
    """Initialize the Firebase Admin app once per process and return a Firestore client."""
    if not firebase_admin._apps:
        service_file = os.environ.get("SERVICE_FILE_LOC", "")
        if service_file:
            firebase_admin.initialize_app(_load_credentials(service_file))
            logger.info("Firebase initialized from SERVICE_FILE_LOC")
        else:
            # Application default credentials on Cloud Run
            firebase_admin.initialize_app()
            logger.info("Firebase initialized with application default credentials")

    return firestore.client()
