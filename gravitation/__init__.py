"""
gravitation: affinity clustering over a peer-to-peer overlay.

Each node declares a profile (an ordered list of interest tags). When it
meets another peer whose profile matches, it captures that peer into its
orbit. The orbit survives restarts through a JSON state file.
"""

__version__ = "0.1.0"
