"""
描述: Door Relay 源码包入口。
主要功能:
    - 受鉴权保护的远程开门服务
    - 双门模式下第二扇门的延迟单次触发
"""

__version__ = "0.1.0"
