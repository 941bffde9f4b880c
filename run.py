#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
WIM镜像定制工具启动脚本
用于启动命令行程序并进行必要的环境检查
"""

import sys
import os
import subprocess
from pathlib import Path


def check_python_version():
    """检查Python版本"""
    if sys.version_info < (3, 8):
        print("错误: 需要Python 3.8或更高版本")
        print(f"当前版本: {sys.version}")
        return False
    return True


def check_platform():
    """DISM只在Windows上可用"""
    if os.name != "nt":
        print("警告: 当前系统不是Windows，镜像相关命令将无法执行")
    return True


def check_dependencies():
    """检查必要的依赖包"""
    required_packages = ['click', 'requests', 'psutil']
    missing_packages = []

    for package in required_packages:
        try:
            __import__(package)
        except ImportError:
            missing_packages.append(package)

    if missing_packages:
        print("错误: 缺少必要的依赖包:")
        for package in missing_packages:
            print(f"  - {package}")
        print("\n请在项目目录运行以下命令安装依赖:")
        print("pip install -e .")
        return False

    return True


def install_dependencies():
    """自动安装依赖包"""
    print("正在安装依赖包...")
    try:
        subprocess.check_call([sys.executable, "-m", "pip", "install", "-e", str(Path(__file__).parent)])
        print("依赖包安装完成")
        return True
    except subprocess.CalledProcessError as e:
        print(f"安装依赖包失败: {e}")
        return False


def main():
    """主函数"""
    if not check_python_version():
        return 1
    check_platform()

    if not check_dependencies():
        if not sys.stdin.isatty():
            return 1
        choice = input("是否自动安装依赖包? (y/n): ").lower().strip()
        if choice not in ['y', 'yes', '是'] or not install_dependencies():
            return 1

    # 设置当前工作目录
    project_root = Path(__file__).parent
    os.chdir(project_root)

    try:
        # 导入并启动主程序，命令执行完毕后由click退出
        from main import main as app_main
        app_main()
    except Exception as e:
        print(f"启动程序时发生错误: {e}")
        import traceback
        traceback.print_exc()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
