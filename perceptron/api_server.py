"""
api_server.py
~~~~~~~~~~~~~

HTTP and WebSocket front end for the perceptron library.

Clients can build a network from layer descriptions or upload one in
either encoding, run it on input vectors, train it on their own examples
(XOR when none are given) and download it again. Training happens in a
gevent greenlet; its progress is pushed over Socket.IO as
``training_update`` events followed by ``training_complete`` or
``training_error``. Trained networks are written to the SQLite store in
``model_persistence`` and picked up again on restart.

Environment:
    LOG_LEVEL              root log level (INFO)
    FLASK_ENV              'production' quiets Socket.IO and werkzeug
    PORT                   listening port (8000)
    PERCEPTRON_MODEL_DIR   directory of the network database (models)
    CLEANUP_DAYS           age after which stored networks are removed (2)
"""

import os
import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional, Sequence

import gevent
from flask import Flask, Response, request, jsonify, send_file
from flask_cors import CORS
from flask_socketio import SocketIO

# Agg renders to memory; there is no display on the server
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from perceptron.activation import activation_from_info
from perceptron.datasets import XOR_EXAMPLES
from perceptron.network import LayerProperties, Network, TrainingExample
from perceptron.serialization import (
    DecodeError,
    decode_network,
    encode_network,
    network_from_json,
    network_to_json
)
from perceptron.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks
)

# ============================================================================
# LOGGING
# ============================================================================

_NOISY_LOGGERS = ('socketio', 'socketio.server', 'engineio', 'engineio.server', 'werkzeug')


def configure_logging() -> None:
    """
    Configure the root logger from LOG_LEVEL.

    Under FLASK_ENV=production the Socket.IO, Engine.IO and werkzeug
    loggers only report warnings; otherwise their info messages show too.
    """
    level = getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    library_level = logging.WARNING if is_production else logging.INFO
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
    if is_production:
        logging.getLogger('perceptron').setLevel(logging.INFO)


is_production = os.getenv('FLASK_ENV') == 'production'
configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# SETTINGS
# ============================================================================

MODEL_DIR = os.getenv('PERCEPTRON_MODEL_DIR', 'models')
CLEANUP_DAYS = int(os.getenv('CLEANUP_DAYS', '2'))
CLEANUP_INTERVAL = 24 * 60 * 60
CLEANUP_RETRY = 60 * 60

DEFAULT_EPOCHS = 10000
DEFAULT_LEARNING_RATE = 0.5
DEFAULT_HIDDEN_LAYERS = [
    {'num_neurons': 3, 'activation': 'Sigmoid'},
    {'num_neurons': 2, 'activation': 'Sigmoid'}
]

# At most this many training_update events per job
MAX_PROGRESS_UPDATES = 100

RUNNING = ('pending', 'training')
FINISHED = ('completed', 'failed')

# ============================================================================
# APPLICATION
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# network_id -> {'network', 'architecture', 'trained', 'total_error', 'error_history'}
active_networks: Dict[str, Dict[str, Any]] = {}

# job_id -> {'network_id', 'status', 'progress', 'epochs', ...}
training_jobs: Dict[str, Dict[str, Any]] = {}


def _not_found(what: str = 'Network'):
    return jsonify({'error': f'{what} not found'}), 404


def _bad_request(message: str):
    return jsonify({'error': message}), 400


def _register_network(
    network_id: str,
    net: Network,
    trained: bool = False,
    total_error: Optional[float] = None
) -> Dict[str, Any]:
    info = {
        'network': net,
        'architecture': net.architecture,
        'trained': trained,
        'total_error': total_error,
        'error_history': []
    }
    active_networks[network_id] = info
    return info


def _get_network_info(network_id: str) -> Optional[Dict[str, Any]]:
    """In-memory entry for ``network_id``, pulled from the store on first use."""
    info = active_networks.get(network_id)
    if info is not None:
        return info

    net = load_network(network_id, MODEL_DIR)
    if net is None:
        return None

    logger.info(f"Network {network_id} brought into memory from the store")
    return _register_network(network_id, net, trained=True)


def _is_training(network_id: str) -> bool:
    return any(
        job['network_id'] == network_id and job['status'] in RUNNING
        for job in training_jobs.values()
    )


def reload_saved_networks() -> None:
    """Put every stored network back into memory after a restart."""
    restored = 0
    for summary in list_saved_networks(MODEL_DIR):
        network_id = summary['network_id']
        net = load_network(network_id, MODEL_DIR)
        if net is None:
            logger.warning(f"Skipping stored network {network_id}: it could not be loaded")
            continue
        _register_network(network_id, net, summary['trained'], summary['total_error'])
        restored += 1

    logger.info(f"Restored {restored} stored network(s)")


# ============================================================================
# MAINTENANCE
# ============================================================================

_cleanup_greenlet = None


def cleanup_finished_training_jobs() -> int:
    """Forget jobs that have completed or failed; returns how many."""
    finished = [job_id for job_id, job in training_jobs.items() if job.get('status') in FINISHED]
    for job_id in finished:
        del training_jobs[job_id]

    if finished:
        logger.info(f"Forgot {len(finished)} finished training job(s)")
    return len(finished)


def run_cleanup() -> int:
    """
    One maintenance pass.

    Removes stored networks older than CLEANUP_DAYS, drops in-memory
    networks whose stored copy went with them, and forgets finished jobs.

    Returns:
        int: Networks removed from the store, or -1 if the store failed
    """
    removed = delete_old_networks(days=CLEANUP_DAYS, model_dir=MODEL_DIR)

    if removed > 0:
        still_stored = {summary['network_id'] for summary in list_saved_networks(MODEL_DIR)}
        # Only networks that were trained have a stored copy to lose
        for network_id in [nid for nid, info in active_networks.items()
                           if info['trained'] and nid not in still_stored]:
            del active_networks[network_id]
            logger.info(f"Dropped {network_id} from memory after cleanup")
    elif removed < 0:
        logger.error("Cleanup could not query the network store")

    cleanup_finished_training_jobs()
    logger.info(f"Cleanup pass removed {max(removed, 0)} stored network(s)")
    return removed


def _cleanup_loop() -> None:
    while True:
        try:
            run_cleanup()
            gevent.sleep(CLEANUP_INTERVAL)
        except Exception as e:
            logger.exception(f"Cleanup pass failed, retrying in an hour: {e}")
            gevent.sleep(CLEANUP_RETRY)


def start_cleanup_task() -> None:
    """Spawn the daily cleanup greenlet unless it is already running."""
    global _cleanup_greenlet

    if _cleanup_greenlet is not None:
        logger.debug("Cleanup greenlet already running")
        return

    logger.info(f"Cleaning up networks older than {CLEANUP_DAYS} day(s) now and once a day")
    _cleanup_greenlet = gevent.spawn(_cleanup_loop)


def initialize() -> None:
    """Restore stored networks and start background maintenance."""
    training_jobs.clear()
    reload_saved_networks()
    start_cleanup_task()


# ============================================================================
# REQUEST BODIES
# ============================================================================

class RequestError(ValueError):
    """A request body that does not describe a valid operation."""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _parse_vector(value: Any, length: int, name: str) -> List[float]:
    if not isinstance(value, list) or len(value) != length:
        raise RequestError(f'{name} must be a list of {length} numbers')
    if not all(_is_number(v) for v in value):
        raise RequestError(f'{name} must contain only numbers')
    return [float(v) for v in value]


def _parse_activation(info: Any, name: str):
    try:
        return activation_from_info(info)
    except ValueError as e:
        raise RequestError(f'{name}: {e}') from e


def _parse_hidden_layers(value: Any) -> List[LayerProperties]:
    if not isinstance(value, list):
        raise RequestError('hidden_layers must be a list')

    layers = []
    for index, entry in enumerate(value):
        where = f'hidden_layers[{index}]'
        if not isinstance(entry, dict):
            raise RequestError(f'{where} must be an object')
        if not _positive_int(entry.get('num_neurons')):
            raise RequestError(f'{where}.num_neurons must be a positive integer')
        layers.append(LayerProperties(
            entry['num_neurons'],
            _parse_activation(entry.get('activation', 'Sigmoid'), f'{where}.activation')
        ))
    return layers


def _parse_examples(value: Any, net: Network) -> List[TrainingExample]:
    if not isinstance(value, list) or not value:
        raise RequestError('examples must be a non-empty list')

    examples = []
    for index, entry in enumerate(value):
        where = f'examples[{index}]'
        if not isinstance(entry, dict):
            raise RequestError(f'{where} must be an object')
        examples.append(TrainingExample(
            input=_parse_vector(entry.get('input'), net.num_inputs, f'{where}.input'),
            target=_parse_vector(entry.get('target'), net.num_outputs, f'{where}.target')
        ))
    return examples


# ============================================================================
# NETWORK ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Liveness check with the number of networks and running jobs."""
    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': sum(1 for job in training_jobs.values() if job.get('status') in RUNNING)
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Build a randomly initialised network.

    Request body (every key optional):
        {
            'num_inputs': 2,
            'num_outputs': 1,
            'hidden_layers': [{'num_neurons': 3, 'activation': 'Sigmoid'}, ...],
            'output_activation': 'Sigmoid'
        }

    Without a body this is the 2-3-2-1 sigmoid network used for XOR.
    """
    data = request.get_json(silent=True) or {}
    num_inputs = data.get('num_inputs', 2)
    num_outputs = data.get('num_outputs', 1)

    if not (_positive_int(num_inputs) and _positive_int(num_outputs)):
        logger.warning(f"Rejected layer widths in={num_inputs!r} out={num_outputs!r}")
        return _bad_request('num_inputs and num_outputs must be positive integers')

    try:
        hidden_layers = _parse_hidden_layers(data.get('hidden_layers', DEFAULT_HIDDEN_LAYERS))
        output_activation = _parse_activation(
            data.get('output_activation', 'Sigmoid'), 'output_activation'
        )
    except RequestError as e:
        return _bad_request(str(e))

    network_id = str(uuid.uuid4())
    net = Network.random(num_inputs, num_outputs, hidden_layers, output_activation)
    _register_network(network_id, net)
    logger.info(f"New network {network_id}: {net.architecture}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.architecture,
        'status': 'created'
    }), 201


@app.route('/api/networks/import', methods=['POST'])
def import_network():
    """
    Accept an encoded network.

    Bodies sent as application/octet-stream are read as the binary
    encoding; anything else is parsed as the JSON encoding.
    """
    binary = request.mimetype == 'application/octet-stream'
    try:
        if binary:
            net = decode_network(request.get_data())
        else:
            net = network_from_json(request.get_data(as_text=True))
    except DecodeError as e:
        logger.warning(f"Upload rejected ({'binary' if binary else 'json'}): {e}")
        return _bad_request(f'Invalid network: {e}')

    network_id = str(uuid.uuid4())
    _register_network(network_id, net)
    logger.info(f"Uploaded network {network_id}: {net.architecture}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.architecture,
        'status': 'imported'
    }), 201


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """Networks in memory first, then those only present in the store."""
    listed = [
        {
            'network_id': network_id,
            'architecture': info['architecture'],
            'trained': info['trained'],
            'total_error': info['total_error'],
            'status': 'in_memory'
        }
        for network_id, info in active_networks.items()
    ]
    for summary in list_saved_networks(MODEL_DIR):
        if summary['network_id'] not in active_networks:
            listed.append(dict(summary, status='saved'))

    return jsonify({'networks': listed}), 200


@app.route('/api/networks/<network_id>', methods=['GET'])
def get_network(network_id: str):
    """Shape, activations and training state of one network."""
    info = _get_network_info(network_id)
    if info is None:
        return _not_found()

    net = info['network']
    return jsonify({
        'network_id': network_id,
        'architecture': net.architecture,
        'activations': [layer.activation.to_info() for layer in net.layers],
        'trained': info['trained'],
        'total_error': info['total_error'],
        'epochs_trained': len(info['error_history'])
    }), 200


@app.route('/api/networks/<network_id>/forward', methods=['POST'])
def forward(network_id: str):
    """Run the network on ``{'input': [...]}``."""
    info = _get_network_info(network_id)
    if info is None:
        return _not_found()

    net = info['network']
    try:
        vector = _parse_vector(
            (request.get_json(silent=True) or {}).get('input'), net.num_inputs, 'input'
        )
    except RequestError as e:
        return _bad_request(str(e))

    return jsonify({
        'network_id': network_id,
        'input': vector,
        'output': net.forward(vector).tolist()
    }), 200


@app.route('/api/networks/<network_id>/export', methods=['GET'])
def export_network(network_id: str):
    """Download a network; ``?format=binary`` gives the npz encoding."""
    info = _get_network_info(network_id)
    if info is None:
        return _not_found()

    requested = request.args.get('format', 'json')
    if requested == 'binary':
        return send_file(
            BytesIO(encode_network(info['network'])),
            mimetype='application/octet-stream',
            as_attachment=True,
            download_name=f'{network_id}.npz'
        )
    if requested != 'json':
        return _bad_request("format must be 'json' or 'binary'")

    return Response(network_to_json(info['network']), mimetype='application/json')


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Remove a network from memory and from the store."""
    in_memory = active_networks.pop(network_id, None) is not None
    on_disk = delete_network(network_id, MODEL_DIR)

    if not (in_memory or on_disk):
        return _not_found()

    logger.info(f"Removed network {network_id} (memory={in_memory}, store={on_disk})")
    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': in_memory,
        'deleted_from_disk': on_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Remove every network, wherever it lives."""
    stored = {summary['network_id'] for summary in list_saved_networks(MODEL_DIR)}
    everything = stored | set(active_networks)

    from_memory = len(active_networks)
    active_networks.clear()
    from_disk = sum(1 for network_id in stored if delete_network(network_id, MODEL_DIR))

    logger.info(f"Removed all {len(everything)} network(s): {from_memory} in memory, {from_disk} stored")
    return jsonify({
        'deleted_count': len(everything),
        'deleted_from_memory': from_memory,
        'deleted_from_disk': from_disk,
        'message': f'Deleted {len(everything)} network(s)'
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Remove stored networks older than ``days`` right away.

    Request body (optional):
        {'days': 2}  # CLEANUP_DAYS when omitted
    """
    days = (request.get_json(silent=True) or {}).get('days', CLEANUP_DAYS)
    if not _is_number(days) or days < 0:
        return _bad_request('days must be a non-negative number')

    removed = delete_old_networks(days=days, model_dir=MODEL_DIR)
    if removed < 0:
        return jsonify({'error': 'The network store could not be cleaned up'}), 500

    logger.info(f"Cleanup on request removed {removed} network(s) older than {days} day(s)")
    return jsonify({
        'deleted_count': removed,
        'days': days,
        'message': f'Deleted {removed} network(s) older than {days} day(s)'
    }), 200


# ============================================================================
# TRAINING
# ============================================================================

@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Queue a training run in the background.

    Request body (every key optional):
        {
            'examples': [{'input': [0, 1], 'target': [1]}, ...],
            'epochs': 10000,
            'learning_rate': 0.5
        }

    ``examples`` defaults to the XOR table, which only fits 2-in/1-out
    networks. Responds 202 with the job id, or 409 while the network is
    already training.
    """
    info = _get_network_info(network_id)
    if info is None:
        logger.warning(f"Cannot train unknown network {network_id}")
        return _not_found()
    if _is_training(network_id):
        return jsonify({'error': 'Network is already being trained'}), 409

    net = info['network']
    data = request.get_json(silent=True) or {}
    epochs = data.get('epochs', DEFAULT_EPOCHS)
    learning_rate = data.get('learning_rate', DEFAULT_LEARNING_RATE)

    if not _positive_int(epochs):
        return _bad_request('epochs must be a positive integer')
    if not _is_number(learning_rate) or learning_rate <= 0:
        return _bad_request('learning_rate must be a positive number')

    try:
        if 'examples' in data:
            examples = _parse_examples(data['examples'], net)
        elif (net.num_inputs, net.num_outputs) == (2, 1):
            examples = list(XOR_EXAMPLES)
        else:
            raise RequestError('examples are required for networks that are not 2-in/1-out')
    except RequestError as e:
        return _bad_request(str(e))

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': epochs
    }
    logger.info(
        f"Job {job_id} queued for {network_id}: {len(examples)} example(s), "
        f"{epochs} epoch(s), learning rate {learning_rate}"
    )

    socketio.start_background_task(
        train_network_task, network_id, job_id, examples, epochs, float(learning_rate)
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def _fail_job(job_id: str, network_id: str, message: str) -> None:
    """Mark a job failed and tell clients why."""
    training_jobs[job_id].update(status='failed', error=message)
    socketio.emit('training_error', {
        'job_id': job_id,
        'network_id': network_id,
        'status': 'failed',
        'error': message
    })
    gevent.sleep(0)


def train_network_task(
    network_id: str,
    job_id: str,
    examples: Sequence[TrainingExample],
    epochs: int,
    learning_rate: float
) -> None:
    """
    Greenlet body for one training job.

    Updates ``training_jobs[job_id]`` after every epoch and emits a
    ``training_update`` roughly every hundredth of the run. On success the
    network is written to the store, unless it was deleted while training;
    then the job fails and nothing is stored.

    Args:
        network_id: Network to train
        job_id: Entry in ``training_jobs`` created by the train endpoint
        examples: Training set
        epochs: Passes over ``examples``
        learning_rate: Step size
    """
    job = training_jobs[job_id]
    info = active_networks.get(network_id)
    if info is None:
        logger.warning(f"Job {job_id}: network {network_id} was deleted before training began")
        _fail_job(job_id, network_id, 'Network was deleted before training started')
        return

    net = info['network']
    every = max(1, epochs // MAX_PROGRESS_UPDATES)

    def report(stats: Dict[str, Any]) -> None:
        progress = 100 * stats['epoch'] / stats['total_epochs']
        job.update(status='training', progress=progress, total_error=stats['total_error'])

        if stats['epoch'] % every == 0 or stats['epoch'] == stats['total_epochs']:
            socketio.emit('training_update', dict(
                stats, job_id=job_id, network_id=network_id, progress=progress
            ))

    try:
        logger.info(f"Job {job_id} running")
        # gevent.sleep(0) between epochs lets requests through
        history = net.train(
            examples, epochs, learning_rate,
            callback=report,
            yield_func=lambda: gevent.sleep(0)
        )
    except Exception as e:
        logger.exception(f"Job {job_id} failed: {e}")
        _fail_job(job_id, network_id, str(e))
        return

    if active_networks.get(network_id) is not info:
        logger.warning(f"Job {job_id}: network {network_id} was deleted during training, not storing it")
        _fail_job(job_id, network_id, 'Network was deleted during training')
        return

    total_error = history[-1]
    info.update(trained=True, total_error=total_error)
    info['error_history'].extend(history)
    job.update(status='completed', progress=100, total_error=total_error)

    save_network(net, network_id, model_dir=MODEL_DIR, trained=True, total_error=total_error)
    logger.info(f"Job {job_id} finished with total error {total_error:.6f}")

    socketio.emit('training_complete', {
        'job_id': job_id,
        'network_id': network_id,
        'status': 'completed',
        'total_error': total_error,
        'progress': 100
    })
    gevent.sleep(0)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """State of a training job."""
    job = training_jobs.get(job_id)
    if job is None:
        return _not_found('Training job')
    return jsonify(job), 200


def create_error_plot(history: Sequence[float], title: str) -> str:
    """
    Draw the per-epoch total error on a log scale.

    Args:
        history: Total error of each epoch
        title: Plot title

    Returns:
        The PNG, base64-encoded
    """
    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(range(1, len(history) + 1), history)
    ax.set_yscale('log')
    ax.set_xlabel('Epoch')
    ax.set_ylabel('Total error')
    ax.set_title(title)

    png = BytesIO()
    fig.savefig(png, format='png', bbox_inches='tight')
    plt.close(fig)
    return base64.b64encode(png.getvalue()).decode('ascii')


@app.route('/api/networks/<network_id>/error_plot', methods=['GET'])
def get_error_plot(network_id: str):
    """Error curve of all training done since the network entered memory."""
    info = _get_network_info(network_id)
    if info is None:
        return _not_found()

    history = info['error_history']
    if not history:
        return jsonify({'error': 'Network has no training history'}), 404

    shape = '-'.join(str(width) for width in info['architecture'])
    return jsonify({
        'network_id': network_id,
        'epochs': len(history),
        'final_error': history[-1],
        'image_data': create_error_plot(history, f'Training error {shape}')
    }), 200


# ============================================================================
# ENTRY POINT
# ============================================================================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    hosted = 'PORT' in os.environ

    logger.info(f"Listening on port {port}" if hosted else f"Serving on http://localhost:{port}/")
    initialize()

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not hosted,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" not in str(e):
            raise
        logger.error(f"Port {port} is taken; set PORT to use another one")
        sys.exit(1)
