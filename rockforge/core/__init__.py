"""领域核心：版本、模型、依赖图、解析器、锁文件、安装树"""
