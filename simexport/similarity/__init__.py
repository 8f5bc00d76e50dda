"""
Similarity matrix access.

Matrices arrive as (row_id, col_id, score) triples in Parquet, one file or a
directory of part files. Rows are streamed in ascending source-id order so
two matrices can be merge-joined without random access.
"""
