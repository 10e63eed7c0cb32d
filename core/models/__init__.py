# 账户与额度
from .account import Account
# 生图记录
from .generation import GenerationRecord
# 购买订单
from .transaction import Transaction
# 导入基础模型
from .base import *
