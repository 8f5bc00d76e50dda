"""
Export layer: merge similarity rows into one document per item and write
them as delimited search-index rows.
"""
