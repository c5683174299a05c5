"""CLI子命令"""
