"""
核心業務邏輯層

這個 package 包含所有會改變狀態的邏輯：
- 狀態機：大廳的狀態轉換
- LobbyManager：加入大廳、選號碼、過期處理
- RoundResolver：開獎與結算
- WalletLedger：票券錢包與帳本
- Scheduler：倒數結束的伺服器端觸發
- Locks：並發控制工具
"""
