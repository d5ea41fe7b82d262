# utils模块初始化
# 作者: clashdash team
