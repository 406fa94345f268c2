"""
Firestore Service Layer

This module provides a thin service layer for interacting with Firestore
using the Firebase Admin SDK. Documents are plain dictionaries; callers
validate them into the Pydantic models defined in app.models.
"""

import logging
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import firestore, initialize_app
from google.cloud.firestore import Client, CollectionReference, DocumentReference

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class FirestoreService:
    """Service class for Firestore document and subcollection operations."""

    def __init__(self, database_name: str = "(default)"):
        """
        Initialize the Firestore service.

        Args:
            database_name: Name of the Firestore database to connect to
        """
        self.database_name = database_name
        self._client: Optional[Client] = None

    @property
    def client(self) -> Client:
        """Get or create the Firestore client."""
        if self._client is None:
            # Initialize Firebase Admin SDK if not already initialized
            try:
                app = initialize_app()
            except ValueError:
                # App already exists, get it
                app = firebase_admin.get_app()

            self._client = firestore.client(app, database=self.database_name)

        return self._client

    def get_collection_ref(
        self, collection_name: str, parent: Optional[DocumentReference] = None
    ) -> CollectionReference:
        """Get a reference to a collection, optionally nested under a document."""
        if parent is not None:
            return parent.collection(collection_name)
        return self.client.collection(collection_name)

    def get_document_ref(
        self, collection_name: str, document_id: str, parent: Optional[DocumentReference] = None
    ) -> DocumentReference:
        """Get a reference to a specific document."""
        return self.get_collection_ref(collection_name, parent).document(document_id)

    async def set_document(
        self,
        collection_name: str,
        document_id: str,
        document_data: Dict[str, Any],
        parent: Optional[DocumentReference] = None,
    ) -> str:
        """
        Create or fully overwrite a document.

        Args:
            collection_name: Name of the collection
            document_id: ID of the document
            document_data: Data to store in the document
            parent: Parent document for subcollections

        Returns:
            The document ID
        """
        try:
            self.get_document_ref(collection_name, document_id, parent).set(document_data)
            logger.debug(f"Wrote document {document_id} in {collection_name}")
            return document_id
        except Exception as e:
            logger.error(f"Failed to write document {document_id} in {collection_name}: {str(e)}")
            raise

    async def get_document(
        self,
        collection_name: str,
        document_id: str,
        parent: Optional[DocumentReference] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Get a document by ID.

        Returns:
            Document data with its id, or None if not found
        """
        try:
            doc = self.get_document_ref(collection_name, document_id, parent).get()
            if not doc.exists:
                return None

            data = doc.to_dict()
            data["id"] = doc.id
            return data

        except Exception as e:
            logger.error(
                f"Failed to get document {document_id} from {collection_name}: {str(e)}"
            )
            raise

    async def delete_document(
        self,
        collection_name: str,
        document_id: str,
        parent: Optional[DocumentReference] = None,
    ) -> bool:
        """Delete a document. Subcollections are not deleted."""
        try:
            self.get_document_ref(collection_name, document_id, parent).delete()
            logger.info(f"Deleted document {document_id} from {collection_name}")
            return True

        except Exception as e:
            logger.error(
                f"Failed to delete document {document_id} from {collection_name}: {str(e)}"
            )
            raise

    async def query_collection(
        self,
        collection_name: str,
        filters: Optional[List[tuple]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        parent: Optional[DocumentReference] = None,
    ) -> List[Dict[str, Any]]:
        """
        Query a collection with filters, ordering, and a result limit.

        Args:
            collection_name: Name of the collection to query
            filters: List of filter tuples (field, operator, value)
            order_by: Field to order by
            descending: Order descending instead of ascending
            limit: Maximum number of results
            parent: Parent document for subcollections

        Returns:
            List of document dictionaries with their ids
        """
        try:
            query = self.get_collection_ref(collection_name, parent)

            # Apply filters
            if filters:
                for field, operator, value in filters:
                    query = query.where(field, operator, value)

            # Apply ordering
            if order_by:
                direction = (
                    firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
                )
                query = query.order_by(order_by, direction=direction)

            if limit:
                query = query.limit(limit)

            results = []
            for doc in query.stream():
                data = doc.to_dict()
                data["id"] = doc.id
                results.append(data)
            return results

        except Exception as e:
            logger.error(f"Failed to query collection {collection_name}: {str(e)}")
            raise

    # Batch operations
    def batch(self):
        """Create a Firestore batch operation context manager."""
        return self.client.batch()


# Global service instance
_firestore_service = None


def get_firestore_service(database_name: str = "(default)") -> FirestoreService:
    """
    Get a singleton Firestore service instance.

    Args:
        database_name: Name of the Firestore database

    Returns:
        FirestoreService instance
    """
    global _firestore_service
    if _firestore_service is None:
        _firestore_service = FirestoreService(database_name)
    return _firestore_service
