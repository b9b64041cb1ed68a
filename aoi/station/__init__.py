"""AOI — Station side of the controller.

Everything that talks to camera stations over the network:
  - protocol: line headers + raw image bodies, per-connection reassembly
  - registry: connection → camera ID, presence
  - dispatcher: targeted and broadcast shutter commands
  - server: asyncio TCP endpoint
  - discovery: mDNS advertisement
"""
