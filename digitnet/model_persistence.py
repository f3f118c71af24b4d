"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite registry of saved networks.

Weights live in plain-text checkpoint directories
(``<model_dir>/checkpoints/<network_id>``); the database keeps one row per
network with its architecture, element type, learning rate, training
status and accuracy so networks can be listed without reading weights.
"""

import os
import json
import shutil
import sqlite3
import logging
from typing import Optional, List, Dict, Any, Generator
from contextlib import contextmanager

from digitnet.errors import DigitNetError
from digitnet.network import Network

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_MODEL_DIR = 'models'


class ModelDatabase:
    """
    Manages the SQLite registry and checkpoint directories.

    The database stores:
    - Network metadata (architecture, element type, training status, accuracy)
    - The path of each network's checkpoint directory
    """

    def __init__(self, db_path: str = 'models/networks.db'):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self.checkpoint_root = os.path.join(
            os.path.dirname(db_path) or '.', 'checkpoints'
        )
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database and checkpoint directories if needed."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)
        os.makedirs(self.checkpoint_root, exist_ok=True)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row  # Enable column access by name
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS networks (
                    network_id TEXT PRIMARY KEY,
                    architecture TEXT NOT NULL,
                    dtype TEXT NOT NULL,
                    learning_rate REAL NOT NULL,
                    checkpoint_path TEXT NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 0,
                    accuracy REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_trained
                ON networks(trained)
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_created_at
                ON networks(created_at DESC)
            ''')

    def checkpoint_path(self, network_id: str) -> str:
        return os.path.join(self.checkpoint_root, network_id)

    @staticmethod
    def _row_to_metadata(row: sqlite3.Row) -> Dict[str, Any]:
        architecture = json.loads(row['architecture'])
        input_size, hidden_size, output_size = architecture
        return {
            'network_id': row['network_id'],
            'architecture': architecture,
            'weights_shape': [
                [hidden_size, input_size],
                [output_size, hidden_size]
            ],
            'dtype': row['dtype'],
            'learning_rate': row['learning_rate'],
            'checkpoint_path': row['checkpoint_path'],
            'trained': bool(row['trained']),
            'accuracy': row['accuracy'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def save_network_to_db(
        self,
        network: Network,
        network_id: str,
        trained: bool = True,
        accuracy: Optional[float] = None
    ) -> bool:
        """
        Save a network checkpoint and record it in the database.

        Args:
            network: Network to save
            network_id: Unique identifier for the network
            trained: Whether the network has been trained
            accuracy: Test accuracy (0.0 to 1.0)

        Returns:
            bool: True if successful

        Raises:
            ValueError: If accuracy is out of valid range
            IOFailure: If the checkpoint cannot be written
        """
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 1.0, got {accuracy}"
            )

        path = self.checkpoint_path(network_id)
        network.save(path)

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO networks
                (network_id, architecture, dtype, learning_rate,
                 checkpoint_path, trained, accuracy, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(network_id) DO UPDATE SET
                    architecture = excluded.architecture,
                    dtype = excluded.dtype,
                    learning_rate = excluded.learning_rate,
                    checkpoint_path = excluded.checkpoint_path,
                    trained = excluded.trained,
                    accuracy = excluded.accuracy,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                network_id,
                json.dumps(network.sizes),
                network.element.name,
                float(network.learning_rate),
                path,
                1 if trained else 0,
                accuracy
            ))

        logger.info(
            f"Saved network '{network_id}' with architecture "
            f"{network.sizes}, trained={trained}, accuracy={accuracy}"
        )
        return True

    def load_network_from_db(self, network_id: str) -> Optional[Network]:
        """
        Load a network from its registered checkpoint.

        Args:
            network_id: Unique identifier of the network

        Returns:
            Network object or None if not registered
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                '''SELECT checkpoint_path, dtype, learning_rate
                   FROM networks WHERE network_id = ?''',
                (network_id,)
            )
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Network '{network_id}' not found")
            return None

        network = Network.from_checkpoint(
            row['checkpoint_path'],
            learning_rate=row['learning_rate'],
            dtype=row['dtype']
        )
        logger.info(f"Loaded network '{network_id}'")
        return network

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """
        List all networks with metadata.

        Returns:
            List of network metadata dictionaries, newest first
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT *
                FROM networks
                ORDER BY created_at DESC, network_id
            ''')
            networks = [self._row_to_metadata(row) for row in cursor.fetchall()]

        logger.debug(f"Listed {len(networks)} networks")
        return networks

    def _remove_checkpoint(self, path: str) -> None:
        if os.path.isdir(path):
            shutil.rmtree(path)

    def delete_network_from_db(self, network_id: str) -> bool:
        """
        Delete a network's row and checkpoint directory.

        Args:
            network_id: Unique identifier of the network

        Returns:
            bool: True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT checkpoint_path FROM networks WHERE network_id = ?',
                (network_id,)
            )
            row = cursor.fetchone()
            cursor.execute(
                'DELETE FROM networks WHERE network_id = ?',
                (network_id,)
            )
            deleted = cursor.rowcount > 0

        if deleted:
            self._remove_checkpoint(row['checkpoint_path'])
            logger.info(f"Deleted network '{network_id}'")
        else:
            logger.warning(
                f"Could not delete network '{network_id}': not found"
            )
        return deleted

    def get_network_metadata_from_db(
        self,
        network_id: str
    ) -> Optional[Dict[str, Any]]:
        """
        Get network metadata without reading the weights.

        Args:
            network_id: Unique identifier of the network

        Returns:
            Metadata dictionary or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT * FROM networks WHERE network_id = ?',
                (network_id,)
            )
            row = cursor.fetchone()

        if row is None:
            logger.warning(
                f"Metadata for network '{network_id}' not found"
            )
            return None
        return self._row_to_metadata(row)

    def delete_old_networks_from_db(self, days: int) -> int:
        """
        Delete networks created more than ``days`` days ago.

        Args:
            days: Age threshold in days (0 deletes everything older than now)

        Returns:
            int: Number of deleted networks

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT network_id, checkpoint_path
                FROM networks
                WHERE julianday('now') - julianday(created_at) > ?
            ''', (days,))
            old = cursor.fetchall()
            cursor.executemany(
                'DELETE FROM networks WHERE network_id = ?',
                [(row['network_id'],) for row in old]
            )

        for row in old:
            self._remove_checkpoint(row['checkpoint_path'])

        if old:
            logger.info(f"Deleted {len(old)} network(s) older than {days} day(s)")
        return len(old)


# Global database instance
_db = None


def _get_db(model_dir: str = DEFAULT_MODEL_DIR) -> ModelDatabase:
    """
    Get the database for ``model_dir``.

    The default directory uses a process-wide instance; any other directory
    gets a fresh one.

    Returns:
        ModelDatabase: The database instance
    """
    global _db
    if model_dir != DEFAULT_MODEL_DIR:
        return ModelDatabase(db_path=os.path.join(model_dir, 'networks.db'))
    if _db is None:
        _db = ModelDatabase()
    return _db


def _valid_id(network_id: str) -> bool:
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return False
    if os.sep in network_id or network_id in ('.', '..') or (
        os.altsep and os.altsep in network_id
    ):
        logger.error(f"Invalid network_id {network_id!r}: must not be a path")
        return False
    return True


def save_network(
    network: Network,
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR,
    trained: bool = True,
    accuracy: Optional[float] = None
) -> bool:
    """
    Save a network checkpoint and register it.

    Args:
        network: The network to save
        network_id: A unique identifier for the network
        model_dir: Directory holding the database and checkpoints
        trained: Boolean indicating if the network has been trained
        accuracy: The accuracy of the trained network (0.0 to 1.0)

    Returns:
        bool: True if the save was successful, False otherwise

    Example:
        >>> net = Network(784, 100, 10, 0.1)
        >>> save_network(net, "my_network", trained=False)
        True
    """
    if not _valid_id(network_id):
        return False

    try:
        db = _get_db(model_dir)
        return db.save_network_to_db(network, network_id, trained, accuracy)

    except ValueError as e:
        logger.error(f"Validation error saving network '{network_id}': {e}")
        return False
    except DigitNetError as e:
        logger.error(f"Checkpoint error saving network '{network_id}': {e}")
        return False
    except sqlite3.Error as e:
        logger.error(f"Database error saving network '{network_id}': {e}")
        return False
    except Exception as e:
        logger.exception(
            f"Unexpected error saving network '{network_id}': {e}"
        )
        return False


def load_network(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[Network]:
    """
    Load a registered network.

    Args:
        network_id: The unique identifier of the network to load
        model_dir: Directory holding the database and checkpoints

    Returns:
        The loaded network or None if not found or unreadable

    Example:
        >>> net = load_network("my_network")
        >>> if net:
        ...     print(f"Loaded network with sizes {net.sizes}")
    """
    if not _valid_id(network_id):
        return None

    try:
        db = _get_db(model_dir)
        return db.load_network_from_db(network_id)

    except DigitNetError as e:
        logger.error(f"Checkpoint error loading network '{network_id}': {e}")
        return None
    except sqlite3.Error as e:
        logger.error(
            f"Database error loading network '{network_id}': {e}"
        )
        return None
    except Exception as e:
        logger.exception(
            f"Unexpected error loading network '{network_id}': {e}"
        )
        return None


def list_saved_networks(
    model_dir: str = DEFAULT_MODEL_DIR
) -> List[Dict[str, Any]]:
    """
    List all saved networks with their metadata.

    Args:
        model_dir: Directory holding the database and checkpoints

    Returns:
        list: A list of metadata dictionaries for each saved network
    """
    try:
        return _get_db(model_dir).list_networks_from_db()

    except sqlite3.Error as e:
        logger.error(f"Database error listing networks: {e}")
        return []
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error listing networks: {e}")
        return []
    except Exception as e:
        logger.exception(f"Unexpected error listing networks: {e}")
        return []


def delete_network(network_id: str, model_dir: str = DEFAULT_MODEL_DIR) -> bool:
    """
    Delete a saved network and its checkpoint.

    Args:
        network_id: The unique identifier of the network to delete
        model_dir: Directory holding the database and checkpoints

    Returns:
        bool: True if deletion was successful, False otherwise
    """
    if not _valid_id(network_id):
        return False

    try:
        return _get_db(model_dir).delete_network_from_db(network_id)

    except sqlite3.Error as e:
        logger.error(f"Database error deleting network '{network_id}': {e}")
        return False
    except OSError as e:
        logger.error(f"Could not remove checkpoint for '{network_id}': {e}")
        return False
    except Exception as e:
        logger.exception(
            f"Unexpected error deleting network '{network_id}': {e}"
        )
        return False


def get_network_metadata(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[Dict[str, Any]]:
    """
    Get metadata for a specific network without reading its weights.

    Args:
        network_id: The unique identifier of the network
        model_dir: Directory holding the database and checkpoints

    Returns:
        dict: Network metadata or None if not found
    """
    if not _valid_id(network_id):
        return None

    try:
        return _get_db(model_dir).get_network_metadata_from_db(network_id)

    except sqlite3.Error as e:
        logger.error(
            f"Database error getting metadata for '{network_id}': {e}"
        )
        return None
    except json.JSONDecodeError as e:
        logger.error(
            f"JSON decode error getting metadata for '{network_id}': {e}"
        )
        return None
    except Exception as e:
        logger.exception(
            f"Unexpected error getting metadata for '{network_id}': {e}"
        )
        return None


def delete_old_networks(days: int = 2, model_dir: str = DEFAULT_MODEL_DIR) -> int:
    """
    Delete networks older than ``days`` days.

    Args:
        days: Age threshold in days
        model_dir: Directory holding the database and checkpoints

    Returns:
        int: Number of deleted networks, or -1 on a database error

    Raises:
        ValueError: If days is negative
    """
    if days < 0:
        raise ValueError(f"days must be non-negative, got {days}")

    try:
        return _get_db(model_dir).delete_old_networks_from_db(days)

    except sqlite3.Error as e:
        logger.error(f"Database error deleting old networks: {e}")
        return -1
    except Exception as e:
        logger.exception(f"Unexpected error deleting old networks: {e}")
        return -1
