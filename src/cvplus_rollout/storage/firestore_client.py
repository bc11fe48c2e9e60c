"""Shared Firestore client for the production adapters.

Both the metrics source and the feature-flag traffic controller talk to the
same Firebase project, so one client is created per database name and
reused for the lifetime of the process.
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

import firebase_admin
from firebase_admin import credentials
from google.cloud import firestore as gcloud_firestore

from cvplus_rollout.exceptions import ConfigurationError, InitializationError

logger = logging.getLogger(__name__)


def _resolve_credentials_path(credentials_path: Optional[str] = None) -> str:
    """
    Find the service account file for the Firebase project.

    Raises:
        ConfigurationError: If no path is configured or the file is missing
    """
    creds_path = credentials_path or os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
    if not creds_path:
        raise ConfigurationError(
            "Firebase credentials not found. Set GOOGLE_APPLICATION_CREDENTIALS "
            "or firestore.credentials_path in the rollout config."
        )
    if not Path(creds_path).exists():
        raise ConfigurationError(f"Credentials file not found: {creds_path}")
    return creds_path


class FirestoreClient:
    """One Firestore client per database name.

    Example:
        >>> db = FirestoreClient.get_client("(default)")
        >>> db.collection("feature_flags").document("migration_flags").get()
    """

    _instances: Dict[str, gcloud_firestore.Client] = {}
    _firebase_initialized: bool = False

    @classmethod
    def get_client(
        cls, database_name: str = "(default)", credentials_path: Optional[str] = None
    ) -> gcloud_firestore.Client:
        """
        Get or create the Firestore client for a database.

        Args:
            database_name: Firestore database name, "(default)" for the default one
            credentials_path: Service account JSON; falls back to
                GOOGLE_APPLICATION_CREDENTIALS

        Returns:
            Cached Firestore client

        Raises:
            ConfigurationError: If credentials are missing
            InitializationError: If Firebase Admin or the client cannot start
        """
        if database_name in cls._instances:
            return cls._instances[database_name]

        creds_path = _resolve_credentials_path(credentials_path)

        if not cls._firebase_initialized:
            cls._initialize_firebase_admin(creds_path)
            cls._firebase_initialized = True

        client = cls._create_database_client(database_name, creds_path)
        cls._instances[database_name] = client
        logger.info("Created Firestore client for database: %s", database_name)
        return client

    @classmethod
    def _initialize_firebase_admin(cls, creds_path: str) -> None:
        try:
            firebase_admin.get_app()
            logger.info("Firebase Admin already initialized, reusing existing app")
            return
        except ValueError:
            pass

        try:
            firebase_admin.initialize_app(credentials.Certificate(creds_path))
            logger.info("Initialized Firebase Admin SDK")
        except Exception as e:
            raise InitializationError(f"Failed to initialize Firebase Admin: {e}") from e

    @classmethod
    def _create_database_client(
        cls, database_name: str, creds_path: str
    ) -> gcloud_firestore.Client:
        try:
            project_id = credentials.Certificate(creds_path).project_id
            if database_name == "(default)":
                return gcloud_firestore.Client(project=project_id)
            return gcloud_firestore.Client(project=project_id, database=database_name)
        except Exception as e:
            raise InitializationError(
                f"Failed to create Firestore client for {database_name}: {e}"
            ) from e

    @classmethod
    def reset_instances(cls) -> None:
        """Drop cached clients. Used by tests."""
        cls._instances.clear()
        cls._firebase_initialized = False

    @classmethod
    def get_all_databases(cls) -> List[str]:
        return list(cls._instances.keys())
