# -*- coding: utf-8 -*-
"""
Paintboard Drawer — 共享画板自动绘制器

持续把远端共享画板向目标图片收敛：
  - 对账循环：定期拉取画板快照，与目标图片逐像素比对，差异入队
  - 派发 worker：固定数量的线程消费待绘队列，借用 token 发起绘制
  - token 池：每个 token 成功绘制后进入冷却期，限制单个身份的绘制频率

三者共享同一个取消信号，由 DrawerSession 统一启动 / 重置 / 停止。
"""

__version__ = "1.0.0"

__all__ = [
    "board_client",
    "cancel",
    "config",
    "credential_pool",
    "dispatcher",
    "errors",
    "image",
    "main",
    "pending",
    "reconciler",
    "session",
    "token_store",
    "ui_server",
]
