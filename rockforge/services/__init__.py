"""服务层：上层操作编排与并行构建"""
