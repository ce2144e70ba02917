"""通用工具：YAML 读写、日志、子进程、哈希、归档、文件锁、网络"""
