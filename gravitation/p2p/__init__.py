# Peer-to-peer networking for gravitation nodes
#
# Provides:
#  - Host / PeerStore / PeerHandle: identity, address book, open connections
#  - MemoryNetwork: in-process transport for topology simulations
#  - WebSocketHost: FastAPI/uvicorn listener with NaCl-boxed request frames
#  - RendezvousService / RoutingDiscovery: advertise and discover under a key
#
# The gravitation core only talks to Host and PeerHandle.
