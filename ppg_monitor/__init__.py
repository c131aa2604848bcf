"""
PPG Monitor: camera-based heart-rate detection.
Place a fingertip over the camera lens with the torch on; the system
extracts the photoplethysmography (PPG) signal from the red channel,
band-pass filters it, counts pulse peaks and reports BPM.
"""

__version__ = "0.1.0"
__author__ = "ppg_monitor"
