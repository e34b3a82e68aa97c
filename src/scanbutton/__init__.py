"""


Scan button client for Canon multi-function printers speaking BJNP over UDP port 8612.

- protocol: the BJNP packet header and the payloads of the commands used here.
    packet encodes and decodes headers, payloads maps each command to the codec of its payload.
- conduit: a Session is a UDP socket connected to one device, sending one request at a time and
    correlating the response by sequence number.
- discovery: broadcasts DISCOVER from every local address and collects the devices that answer,
    asking each one for its IEEE 1284 device id.
- connection_maintenance: the BackoffController keeps a connection to a device, backing off
    exponentially while the device cannot be reached.
- listener: the EventListener performs the handshake, polls for button presses and acknowledges them.
- mapping: turns the raw scan settings of a button press into a ScanConfiguration.
- launcher: runs a command for each button press, passing the settings in SCANNER_* variables.
- config: layered configobj files providing the defaults of the command line.
- cli: the `scanner-button` command with its `scan` and `listen` subcommands.
- support: events, retry strategies and the cancellation token used for shutdown.
"""
