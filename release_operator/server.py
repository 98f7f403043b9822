# HTTP trigger for the release operator
# An external scheduler (cron, Cloud Scheduler, ...) POSTs /rollout to run a pass.
from flask import Flask, jsonify


def create_app(run_pass):
    """Build the Flask app; run_pass() returns a list of ServiceRun"""
    app = Flask(__name__)

    @app.route('/rollout', methods=['POST'])
    def rollout():
        runs = run_pass()
        failed = any(run.failed for run in runs)
        return jsonify({
            'status': 'error' if failed else 'ok',
            'services': [run.to_dict() for run in runs],
        }), 500 if failed else 200

    @app.route('/healthz', methods=['GET'])
    def healthz():
        return jsonify({'status': 'ok'}), 200

    return app
