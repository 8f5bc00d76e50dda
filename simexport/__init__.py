"""
Similarity index export.

Turns the item-item similarity matrices produced upstream into flat CSV
documents for bulk loading into a search index:

    item_id,similar_items,cross_action_similar_items
    ipad,iphone,iphone nexus

Design principle:
Keep every module import-safe. Work happens only inside explicit
entrypoints (ExportPipeline.run / write_to_index.main).
"""

__version__ = "0.1.0"
