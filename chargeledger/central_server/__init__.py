"""OCPP websocket central system, device-control routes and the command consumer."""
