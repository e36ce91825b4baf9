"""taskhive -- agent 执行协调核心

事件日志与分发、准入控制、任务状态机、activity 树、人工交互闸门。
"""

__version__ = "0.1.0"
