import eventlet
eventlet.monkey_patch()

import os

from app import app, socketio

if __name__ == '__main__':
    # Use socketio.run instead of app.run
    socketio.run(
        app,
        debug=os.getenv('FLASK_DEBUG') == '1',
        host='0.0.0.0',
        port=int(os.getenv('PORT', '5000')),
    )
