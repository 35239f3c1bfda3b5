from .common_separator import CommonSeparator
from .mdx_separator import MDXSeparator, pack_segment, unpack_segment
