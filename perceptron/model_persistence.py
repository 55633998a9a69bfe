"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

Keeps networks in a small SQLite database so they outlive the server.

Each row holds the binary encoding produced by ``serialization`` plus a few
columns that can be queried without decoding it: layer widths, activation
tags, the trained flag and the error of the last training epoch.

The module-level helpers are what the API server calls. They never raise
for storage problems; failures are logged and reported through the return
value (``False``, ``None``, ``[]`` or ``-1``).
"""

import sqlite3
import json
import os
import logging
from typing import Optional, List, Dict, Any, Iterator
from contextlib import contextmanager

from perceptron.network import Network
from perceptron.serialization import (
    SerializationError,
    decode_network,
    encode_network
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL_DIR = 'models'
DB_FILENAME = 'networks.db'

_SCHEMA = (
    '''
    CREATE TABLE IF NOT EXISTS networks (
        network_id   TEXT PRIMARY KEY,
        architecture TEXT NOT NULL,
        activations  TEXT NOT NULL,
        network_data BLOB NOT NULL,
        trained      INTEGER NOT NULL DEFAULT 0,
        total_error  REAL,
        created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_networks_created ON networks(created_at DESC)',
)

# Everything except the encoded network itself
_SUMMARY_COLUMNS = (
    'network_id, architecture, activations, trained, '
    'total_error, created_at, updated_at'
)


def _summarize(row: sqlite3.Row) -> Dict[str, Any]:
    """Turn a summary row into the metadata dict handed to API clients."""
    widths = json.loads(row['architecture'])
    pairs = list(zip(widths[:-1], widths[1:]))
    return {
        'network_id': row['network_id'],
        'architecture': widths,
        'activations': json.loads(row['activations']),
        'weights_shape': [[fan_out, fan_in] for fan_in, fan_out in pairs],
        'biases_shape': [[fan_out] for _, fan_out in pairs],
        'trained': row['trained'] == 1,
        'total_error': row['total_error'],
        'created_at': row['created_at'],
        'updated_at': row['updated_at']
    }


class NetworkStore:
    """
    One SQLite file of saved networks.

    Unlike the module-level helpers, the methods here let database and
    decoding errors propagate to the caller.
    """

    def __init__(self, db_path: str = os.path.join(DEFAULT_MODEL_DIR, DB_FILENAME)):
        self.db_path = db_path
        parent = os.path.dirname(db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with self._transaction() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success and always close it."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def save(
        self,
        network: Network,
        network_id: str,
        trained: bool = True,
        total_error: Optional[float] = None
    ) -> None:
        """
        Insert ``network`` under ``network_id``, overwriting an older entry.

        Args:
            network: Network to store
            network_id: Key of the row
            trained: Value of the trained flag
            total_error: Error of the last training epoch, if any

        Raises:
            ValueError: If total_error is negative
            SerializationError: If the network cannot be encoded
            sqlite3.Error: On database failures
        """
        if total_error is not None and total_error < 0.0:
            raise ValueError(f"Total error must be non-negative, got {total_error}")

        row = (
            network_id,
            json.dumps(network.architecture),
            json.dumps([layer.activation.to_info() for layer in network.layers]),
            encode_network(network),
            int(bool(trained)),
            total_error,
        )
        with self._transaction() as conn:
            conn.execute(
                'INSERT OR REPLACE INTO networks (network_id, architecture, '
                'activations, network_data, trained, total_error, updated_at) '
                'VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)',
                row
            )

        logger.info(
            f"Stored '{network_id}' ({'-'.join(map(str, network.architecture))}, "
            f"trained={trained}, total_error={total_error})"
        )

    def load(self, network_id: str) -> Optional[Network]:
        """
        Decode the network stored under ``network_id``.

        Args:
            network_id: Key of the row

        Returns:
            The decoded network, or None if no row has that key

        Raises:
            DecodeError: If the stored bytes are not a valid network
            sqlite3.Error: On database failures
        """
        with self._transaction() as conn:
            row = conn.execute(
                'SELECT network_data FROM networks WHERE network_id = ?',
                (network_id,)
            ).fetchone()

        if row is None:
            logger.warning(f"No stored network '{network_id}'")
            return None

        network = decode_network(row['network_data'])
        logger.info(f"Read '{network_id}' from {self.db_path}")
        return network

    def summaries(self) -> List[Dict[str, Any]]:
        """
        Metadata of every stored network, newest first.

        Returns:
            list: One dict per network with ``network_id``, ``architecture``,
            ``activations``, ``weights_shape``, ``biases_shape``, ``trained``,
            ``total_error``, ``created_at`` and ``updated_at``
        """
        with self._transaction() as conn:
            rows = conn.execute(
                f'SELECT {_SUMMARY_COLUMNS} FROM networks ORDER BY created_at DESC'
            ).fetchall()

        logger.debug(f"{len(rows)} network(s) in {self.db_path}")
        return [_summarize(row) for row in rows]

    def summary(self, network_id: str) -> Optional[Dict[str, Any]]:
        """
        Metadata of one network, read without decoding the blob.

        Args:
            network_id: Key of the row

        Returns:
            The same dict ``summaries`` gives per network, or None if absent
        """
        with self._transaction() as conn:
            row = conn.execute(
                f'SELECT {_SUMMARY_COLUMNS} FROM networks WHERE network_id = ?',
                (network_id,)
            ).fetchone()

        return None if row is None else _summarize(row)

    def remove(self, network_id: str) -> bool:
        """
        Drop one network.

        Args:
            network_id: Key of the row

        Returns:
            bool: True if a row was removed, False if there was none
        """
        with self._transaction() as conn:
            removed = conn.execute(
                'DELETE FROM networks WHERE network_id = ?', (network_id,)
            ).rowcount > 0

        if removed:
            logger.info(f"Removed '{network_id}'")
        else:
            logger.warning(f"Nothing to remove for '{network_id}'")
        return removed

    def remove_older_than(self, days: float) -> int:
        """
        Drop networks whose creation time is more than ``days`` days ago.

        Args:
            days: Age limit in days; fractions such as 0.5 are allowed

        Returns:
            int: Number of rows removed

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._transaction() as conn:
            removed = conn.execute(
                "DELETE FROM networks WHERE created_at < datetime('now', ?)",
                (f'-{float(days):f} days',)
            ).rowcount

        logger.info(f"Removed {removed} network(s) created over {days} day(s) ago")
        return removed


_default_store: Optional[NetworkStore] = None


def _store_for(model_dir: str) -> NetworkStore:
    """Shared store for the default directory, a fresh one elsewhere."""
    global _default_store
    if model_dir != DEFAULT_MODEL_DIR:
        return NetworkStore(os.path.join(model_dir, DB_FILENAME))
    if _default_store is None:
        _default_store = NetworkStore()
    return _default_store


def _valid_id(network_id: Any) -> bool:
    if isinstance(network_id, str) and network_id:
        return True
    logger.error(f"Rejected network id {network_id!r}: expected a non-empty string")
    return False


def save_network(
    network: Network,
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR,
    trained: bool = True,
    total_error: Optional[float] = None
) -> bool:
    """
    Store a network, replacing any earlier one with the same id.

    Args:
        network: The network to store
        network_id: Non-empty key for the network
        model_dir: Directory holding the database file
        trained: Whether the network has been trained
        total_error: Error of the last training epoch

    Returns:
        bool: True once the row is written, False on any failure

    Example:
        >>> net = Network.random(2, 1, [(3, Sigmoid())], Sigmoid())
        >>> save_network(net, "xor", trained=False)
        True
    """
    if not _valid_id(network_id):
        return False

    try:
        _store_for(model_dir).save(network, network_id, trained, total_error)
        return True
    except ValueError as e:
        logger.error(f"Refused to store '{network_id}': {e}")
    except SerializationError as e:
        logger.error(f"Could not encode '{network_id}': {e}")
    except sqlite3.Error as e:
        logger.error(f"SQLite failure storing '{network_id}': {e}")
    return False


def load_network(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[Network]:
    """
    Fetch a stored network.

    Returns None when the id is unknown and also when the stored bytes no
    longer decode.
    """
    if not _valid_id(network_id):
        return None

    try:
        return _store_for(model_dir).load(network_id)
    except SerializationError as e:
        logger.error(f"Stored bytes for '{network_id}' do not decode: {e}")
    except sqlite3.Error as e:
        logger.error(f"SQLite failure reading '{network_id}': {e}")
    return None


def list_saved_networks(
    model_dir: str = DEFAULT_MODEL_DIR
) -> List[Dict[str, Any]]:
    """Metadata of all stored networks, or an empty list on failure."""
    try:
        return _store_for(model_dir).summaries()
    except (sqlite3.Error, json.JSONDecodeError) as e:
        logger.error(f"Could not list stored networks: {e}")
        return []


def delete_network(network_id: str, model_dir: str = DEFAULT_MODEL_DIR) -> bool:
    """Remove a stored network. False if it was absent or removal failed."""
    if not _valid_id(network_id):
        return False

    try:
        return _store_for(model_dir).remove(network_id)
    except sqlite3.Error as e:
        logger.error(f"SQLite failure removing '{network_id}': {e}")
        return False


def get_network_metadata(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[Dict[str, Any]]:
    """
    Metadata of one stored network.

    Example:
        >>> info = get_network_metadata("xor")
        >>> if info:
        ...     print(info['architecture'], info['total_error'])
    """
    if not _valid_id(network_id):
        return None

    try:
        return _store_for(model_dir).summary(network_id)
    except (sqlite3.Error, json.JSONDecodeError) as e:
        logger.error(f"Could not read metadata of '{network_id}': {e}")
        return None


def delete_old_networks(days: float = 2, model_dir: str = DEFAULT_MODEL_DIR) -> int:
    """
    Remove networks created more than ``days`` days ago.

    Args:
        days: Age limit in days, fractions allowed
        model_dir: Directory holding the database file

    Returns:
        int: How many networks were removed, or -1 if the database failed

    Raises:
        ValueError: If days is negative
    """
    if days < 0:
        raise ValueError(f"days must be non-negative, got {days}")

    try:
        return _store_for(model_dir).remove_older_than(days)
    except sqlite3.Error as e:
        logger.error(f"SQLite failure during cleanup: {e}")
        return -1
