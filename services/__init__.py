"""
服務層

這個 package 包含純計算與查詢邏輯，不負責狀態轉換：
- economy：等級、隊列與獎勵的查表
- spin_service：轉盤結果計算
- lobby_view：大廳狀態的投影
- history_service：開獎歷史快照
"""
