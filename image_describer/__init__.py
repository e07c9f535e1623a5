"""
Storage Image Describer

Reacts to Cloud Storage object-finalized events, sends each new image to
Gemini on Vertex AI with a fixed instruction, and logs the streamed
description.
"""

__version__ = "1.0.0"
