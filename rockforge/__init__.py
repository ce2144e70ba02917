"""rockforge - 脚本语言生态的包管理器

依赖解析、锁文件同步、并行构建与安装。
"""

__version__ = "0.4.0"
