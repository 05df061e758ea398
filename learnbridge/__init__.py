"""
learnbridge
~~~~~~~~~~~

Learn Bridge 实时会话服务。
"""

__version__ = "0.1.0"
