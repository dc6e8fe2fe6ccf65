"""
arowss package

Onboard code for the remote-sensing payload's video downlink: pipeline
specs and quality tiers, the capture/encoder process supervisor, link
quality monitoring, the adaptive controller and the operator status server.
This package runs on the flight computer and drives the camera and encoder
tools as child processes.
"""
