import os
import subprocess
import sys

from biz_server import app


def start_sync_worker():
    if os.getenv('SYNC_WORKER_AUTO_START', '0') != '1':
        return None
    if os.environ.get('WERKZEUG_RUN_MAIN') == 'true':
        return None
    script_path = os.path.join(os.path.dirname(__file__), 'sync_worker.py')
    if not os.path.exists(script_path):
        return None
    return subprocess.Popen([sys.executable, script_path], env=os.environ.copy())


if __name__ == '__main__':
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    worker_proc = start_sync_worker()
    try:
        app.run(host=host, port=port, debug=debug)
    finally:
        if worker_proc:
            worker_proc.terminate()
