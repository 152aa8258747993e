"""Blog Pipeline - multi-stage blog generation service.

Turns a topic plus reference material into a reviewed blog post:
- Research: structured notes from the reference material
- Draft: a markdown article written from the notes
- Review: a scored quality review, with bounded rewrites below the threshold
"""

__version__ = "0.1.0"
