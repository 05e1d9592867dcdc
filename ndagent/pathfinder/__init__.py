"""Stream tunnelling over a WebSocket relay: frames, streams, shell and HTTP proxying."""