"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Tests for the REST API using the Flask test client.

Background training runs synchronously and SocketIO events are captured
instead of being sent.
"""

import pytest
import base64
import os
import sqlite3
import sys

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from perceptron import api_server
from perceptron.activation import Identity
from perceptron.model_persistence import list_saved_networks, save_network
from perceptron.network import Layer, Network
from perceptron.serialization import network_to_json


@pytest.fixture
def emitted(monkeypatch, tmp_path):
    """Isolate server state and record emitted SocketIO events."""
    events = []

    monkeypatch.setattr(api_server, 'MODEL_DIR', str(tmp_path / 'models'))
    monkeypatch.setattr(api_server, 'active_networks', {})
    monkeypatch.setattr(api_server, 'training_jobs', {})
    monkeypatch.setattr(
        api_server.socketio, 'emit',
        lambda event, data, **kwargs: events.append((event, data))
    )
    monkeypatch.setattr(
        api_server.socketio, 'start_background_task',
        lambda target, *args: target(*args)
    )
    monkeypatch.setattr(api_server.gevent, 'sleep', lambda seconds=0: None)
    return events


@pytest.fixture
def client(emitted):
    api_server.app.config['TESTING'] = True
    with api_server.app.test_client() as client:
        yield client


@pytest.fixture
def network_id(client):
    """Id of a freshly created default 2-3-2-1 network."""
    response = client.post('/api/networks', json={})
    return response.get_json()['network_id']


@pytest.mark.unit
class TestNetworks:
    """Creating, inspecting and deleting networks."""

    def test_status(self, client):
        response = client.get('/api/status')

        assert response.status_code == 200
        assert response.get_json() == {
            'status': 'online',
            'active_networks': 0,
            'training_jobs': 0
        }

    def test_create_default_network(self, client):
        response = client.post('/api/networks', json={})

        assert response.status_code == 201
        data = response.get_json()
        assert data['architecture'] == [2, 3, 2, 1]
        assert data['status'] == 'created'
        assert data['network_id'] in api_server.active_networks

    def test_create_custom_network(self, client):
        response = client.post('/api/networks', json={
            'num_inputs': 3,
            'num_outputs': 2,
            'hidden_layers': [
                {'num_neurons': 4, 'activation': 'Identity'},
                {'num_neurons': 2, 'activation': {
                    'DebugPrint': {'output': 'h2', 'activation': 'Sigmoid'}
                }}
            ],
            'output_activation': 'Identity'
        })

        assert response.status_code == 201
        network_id = response.get_json()['network_id']

        details = client.get(f'/api/networks/{network_id}').get_json()
        assert details['architecture'] == [3, 4, 2, 2]
        assert details['activations'] == [
            'Identity',
            {'DebugPrint': {'output': 'h2', 'activation': 'Sigmoid'}},
            'Identity'
        ]
        assert details['trained'] is False

    @pytest.mark.parametrize('body', [
        {'num_inputs': 0},
        {'num_outputs': 'two'},
        {'hidden_layers': 'wide'},
        {'hidden_layers': [{'num_neurons': 0}]},
        {'hidden_layers': [{'num_neurons': 3, 'activation': 'Relu'}]},
        {'output_activation': {'Softmax': None}},
    ])
    def test_create_rejects_invalid_body(self, client, body):
        response = client.post('/api/networks', json=body)

        assert response.status_code == 400
        assert 'error' in response.get_json()

    def test_get_unknown_network(self, client):
        assert client.get('/api/networks/missing').status_code == 404

    def test_forward(self, client, network_id):
        response = client.post(f'/api/networks/{network_id}/forward', json={'input': [0, 1]})

        assert response.status_code == 200
        output = response.get_json()['output']
        assert len(output) == 1
        assert 0.0 < output[0] < 1.0

    @pytest.mark.parametrize('body', [{}, {'input': [1.0]}, {'input': [1.0, 'x']}])
    def test_forward_rejects_bad_input(self, client, network_id, body):
        response = client.post(f'/api/networks/{network_id}/forward', json=body)
        assert response.status_code == 400

    def test_forward_unknown_network(self, client):
        response = client.post('/api/networks/missing/forward', json={'input': [0, 1]})
        assert response.status_code == 404

    def test_delete_network(self, client, network_id):
        response = client.delete(f'/api/networks/{network_id}')

        assert response.status_code == 200
        assert response.get_json()['deleted_from_memory'] is True
        assert client.get(f'/api/networks/{network_id}').status_code == 404

    def test_delete_unknown_network(self, client):
        assert client.delete('/api/networks/missing').status_code == 404

    def test_delete_all_networks(self, client):
        client.post('/api/networks', json={})
        client.post('/api/networks', json={})
        save_network(
            Network([Layer([[1.0]], [0.0], Identity())]),
            'saved_only',
            model_dir=api_server.MODEL_DIR
        )

        response = client.delete('/api/networks')

        assert response.status_code == 200
        assert response.get_json()['deleted_count'] == 3
        assert client.get('/api/networks').get_json()['networks'] == []

    def test_list_includes_saved_networks(self, client, network_id):
        save_network(
            Network([Layer([[1.0]], [0.0], Identity())]),
            'saved_only',
            model_dir=api_server.MODEL_DIR
        )

        networks = client.get('/api/networks').get_json()['networks']

        statuses = {net['network_id']: net['status'] for net in networks}
        assert statuses == {network_id: 'in_memory', 'saved_only': 'saved'}

    def test_saved_network_is_loaded_on_demand(self, client):
        save_network(
            Network([Layer([[2.0]], [1.0], Identity())]),
            'on_disk',
            model_dir=api_server.MODEL_DIR
        )

        response = client.post('/api/networks/on_disk/forward', json={'input': [3.0]})

        assert response.status_code == 200
        assert response.get_json()['output'] == [7.0]
        assert 'on_disk' in api_server.active_networks

    def test_cleanup_rejects_negative_days(self, client):
        response = client.post('/api/networks/cleanup', json={'days': -1})
        assert response.status_code == 400

    def test_cleanup(self, client):
        response = client.post('/api/networks/cleanup', json={'days': 2})

        assert response.status_code == 200
        assert response.get_json()['deleted_count'] == 0


@pytest.mark.unit
class TestImportExport:
    """Moving networks in and out of the server."""

    def test_json_export_import(self, client, network_id):
        exported = client.get(f'/api/networks/{network_id}/export')
        assert exported.status_code == 200
        assert exported.mimetype == 'application/json'

        imported = client.post(
            '/api/networks/import',
            data=exported.get_data(as_text=True),
            content_type='application/json'
        )
        assert imported.status_code == 201
        new_id = imported.get_json()['network_id']

        for input in ([0, 0], [0, 1], [1, 0], [1, 1]):
            original = client.post(f'/api/networks/{network_id}/forward', json={'input': input})
            copy = client.post(f'/api/networks/{new_id}/forward', json={'input': input})
            assert original.get_json()['output'] == copy.get_json()['output']

    def test_binary_export_import(self, client, network_id):
        exported = client.get(f'/api/networks/{network_id}/export?format=binary')
        assert exported.status_code == 200
        assert exported.mimetype == 'application/octet-stream'

        imported = client.post(
            '/api/networks/import',
            data=exported.data,
            content_type='application/octet-stream'
        )
        assert imported.status_code == 201
        assert imported.get_json()['architecture'] == [2, 3, 2, 1]

    def test_import_hand_written_network(self, client):
        network = Network([Layer([[0.5, 0.5]], [0.0], Identity())])

        response = client.post(
            '/api/networks/import',
            data=network_to_json(network),
            content_type='application/json'
        )

        assert response.status_code == 201
        assert response.get_json()['architecture'] == [2, 1]

    @pytest.mark.parametrize('data, content_type', [
        ('{"layers": []}', 'application/json'),
        ('{"layers": [{"weights": [[1]], "biases": [0], "activation": "Tanh"}]}', 'application/json'),
        ('not json', 'application/json'),
        (b'not a network', 'application/octet-stream'),
    ])
    def test_import_rejects_invalid_network(self, client, data, content_type):
        response = client.post('/api/networks/import', data=data, content_type=content_type)
        assert response.status_code == 400

    def test_export_unknown_format(self, client, network_id):
        response = client.get(f'/api/networks/{network_id}/export?format=xml')
        assert response.status_code == 400


@pytest.mark.integration
class TestTraining:
    """Background training jobs."""

    def test_train_default_dataset(self, client, network_id, emitted):
        response = client.post(
            f'/api/networks/{network_id}/train',
            json={'epochs': 200, 'learning_rate': 0.5}
        )

        assert response.status_code == 202
        job_id = response.get_json()['job_id']

        status = client.get(f'/api/training/{job_id}').get_json()
        assert status['status'] == 'completed'
        assert status['progress'] == 100
        assert status['total_error'] >= 0.0

        event_names = [event for event, _ in emitted]
        assert event_names.count('training_update') == 100
        assert event_names[-1] == 'training_complete'

        saved = list_saved_networks(api_server.MODEL_DIR)
        assert [net['network_id'] for net in saved] == [network_id]
        assert saved[0]['trained'] is True

        details = client.get(f'/api/networks/{network_id}').get_json()
        assert details['trained'] is True
        assert details['epochs_trained'] == 200

    def test_train_custom_examples(self, client):
        network_id = client.post('/api/networks', json={
            'num_inputs': 1,
            'num_outputs': 1,
            'hidden_layers': [],
            'output_activation': 'Identity'
        }).get_json()['network_id']

        response = client.post(f'/api/networks/{network_id}/train', json={
            'examples': [
                {'input': [0.0], 'target': [1.0]},
                {'input': [1.0], 'target': [3.0]},
            ],
            'epochs': 500,
            'learning_rate': 0.1
        })
        assert response.status_code == 202

        # Learns y = 2x + 1
        output = client.post(
            f'/api/networks/{network_id}/forward', json={'input': [2.0]}
        ).get_json()['output']
        assert output[0] == pytest.approx(5.0, abs=1e-3)

    @pytest.mark.parametrize('body', [
        {'epochs': 0},
        {'epochs': 'many'},
        {'learning_rate': 0},
        {'learning_rate': True},
        {'examples': []},
        {'examples': [{'input': [1.0], 'target': [1.0]}]},
        {'examples': [{'input': [1.0, 0.0], 'target': [1.0, 0.0]}]},
    ])
    def test_train_rejects_invalid_body(self, client, network_id, body):
        response = client.post(f'/api/networks/{network_id}/train', json=body)
        assert response.status_code == 400

    def test_train_requires_examples_for_non_xor_shape(self, client):
        network_id = client.post(
            '/api/networks', json={'num_inputs': 3}
        ).get_json()['network_id']

        response = client.post(f'/api/networks/{network_id}/train', json={'epochs': 5})
        assert response.status_code == 400

    def test_train_unknown_network(self, client):
        assert client.post('/api/networks/missing/train', json={}).status_code == 404

    def test_train_conflict_while_job_running(self, client, network_id):
        api_server.training_jobs['existing'] = {
            'network_id': network_id,
            'status': 'training',
            'progress': 10,
            'epochs': 100
        }

        response = client.post(f'/api/networks/{network_id}/train', json={'epochs': 5})

        assert response.status_code == 409

    def test_unknown_job(self, client):
        assert client.get('/api/training/missing').status_code == 404

    def test_error_plot(self, client, network_id):
        assert client.get(f'/api/networks/{network_id}/error_plot').status_code == 404

        client.post(f'/api/networks/{network_id}/train', json={'epochs': 20})
        response = client.get(f'/api/networks/{network_id}/error_plot')

        assert response.status_code == 200
        data = response.get_json()
        assert data['epochs'] == 20
        assert base64.b64decode(data['image_data']).startswith(b'\x89PNG')

    def test_finished_jobs_are_cleaned_up(self, client, network_id):
        client.post(f'/api/networks/{network_id}/train', json={'epochs': 5})
        assert len(api_server.training_jobs) == 1

        assert api_server.cleanup_finished_training_jobs() == 1
        assert api_server.training_jobs == {}

    def test_cleanup_pass_keeps_recent_and_untrained_networks(self, client, network_id):
        trained_id = client.post('/api/networks', json={}).get_json()['network_id']
        client.post(f'/api/networks/{trained_id}/train', json={'epochs': 5})

        assert api_server.run_cleanup() == 0

        assert set(api_server.active_networks) == {network_id, trained_id}
        assert api_server.training_jobs == {}


@pytest.fixture
def deferred(monkeypatch, emitted):
    """Collect background tasks instead of running them, to run later."""
    tasks = []
    monkeypatch.setattr(
        api_server.socketio, 'start_background_task',
        lambda target, *args: tasks.append((target, args))
    )
    return tasks


@pytest.mark.integration
class TestDeletionDuringTraining:
    """Jobs whose network disappears before or while they run."""

    def test_network_deleted_mid_training_is_not_stored(
            self, client, network_id, deferred, emitted, monkeypatch):
        job_id = client.post(
            f'/api/networks/{network_id}/train', json={'epochs': 3}
        ).get_json()['job_id']
        deletions = []

        def delete_on_first_yield(seconds=0):
            if not deletions:
                deletions.append(client.delete(f'/api/networks/{network_id}').status_code)

        monkeypatch.setattr(api_server.gevent, 'sleep', delete_on_first_yield)
        [(target, args)] = deferred
        target(*args)

        assert deletions == [200]
        assert list_saved_networks(api_server.MODEL_DIR) == []
        assert network_id not in api_server.active_networks
        assert api_server.training_jobs[job_id]['status'] == 'failed'
        assert emitted[-1][0] == 'training_error'

    def test_network_deleted_before_job_starts(self, client, network_id, deferred, emitted):
        job_id = client.post(
            f'/api/networks/{network_id}/train', json={'epochs': 3}
        ).get_json()['job_id']
        assert client.delete(f'/api/networks/{network_id}').status_code == 200

        [(target, args)] = deferred
        target(*args)

        job = client.get(f'/api/training/{job_id}').get_json()
        assert job['status'] == 'failed'
        assert 'deleted' in job['error']
        assert emitted[-1][0] == 'training_error'
        assert client.get('/api/status').get_json()['training_jobs'] == 0

        assert api_server.cleanup_finished_training_jobs() == 1


@pytest.mark.unit
class TestInputEdgeCases:
    """Request bodies at the edges of what is accepted."""

    def test_import_number_beyond_float_range(self, client):
        text = ('{"layers": [{"weights": [[' + '9' * 400 + ']], '
                '"biases": [0], "activation": "Identity"}]}')

        response = client.post('/api/networks/import', data=text, content_type='application/json')

        assert response.status_code == 400

    def test_cleanup_with_fractional_days(self, client):
        for network_id, age in (('two_hours', '-2 hours'), ('day_old', '-25 hours')):
            save_network(
                Network([Layer([[1.0]], [0.0], Identity())]),
                network_id,
                model_dir=api_server.MODEL_DIR
            )
            conn = sqlite3.connect(os.path.join(api_server.MODEL_DIR, 'networks.db'))
            with conn:
                conn.execute(
                    "UPDATE networks SET created_at = datetime('now', ?) WHERE network_id = ?",
                    (age, network_id)
                )
            conn.close()

        response = client.post('/api/networks/cleanup', json={'days': 0.5})

        assert response.status_code == 200
        assert response.get_json()['deleted_count'] == 1
        assert response.get_json()['days'] == 0.5
        assert [net['network_id'] for net in list_saved_networks(api_server.MODEL_DIR)] == ['two_hours']
