"""Chat UI fragment. Only sent to the browser after a successful login."""

CHAT_UI_HTML = """
<style>
  .chat-app { display: flex; flex-direction: column; height: 100%; background: #121212; color: #e0e0e0; font-family: -apple-system, "Segoe UI", Roboto, sans-serif; }
  .chat-header { padding: 14px 20px; border-bottom: 1px solid #333; font-weight: 600; display: flex; align-items: center; gap: 10px; }
  .chat-status { width: 8px; height: 8px; border-radius: 50%; background: #00e676; }
  .chat-status.offline { background: #ffb300; }
  .chat-messages { flex: 1; overflow-y: auto; padding: 20px; display: flex; flex-direction: column; gap: 12px; }
  .msg-bubble { align-self: flex-start; max-width: 85%; padding: 10px 14px; background: #2c2c2c; border-radius: 16px; word-wrap: break-word; }
  .msg-bubble.pending { opacity: 0.6; font-style: italic; }
  .msg-time { font-size: 10px; color: #888; margin-top: 4px; text-align: right; }
  .chat-input-area { padding: 12px 16px; border-top: 1px solid #333; display: flex; gap: 10px; align-items: center; }
  .chat-input { flex: 1; background: #252525; border: 1px solid #3a3a3a; padding: 10px 16px; border-radius: 20px; color: #fff; font-size: 16px; }
  .send-btn { background: #007aff; border: none; width: 42px; height: 42px; border-radius: 50%; color: #fff; cursor: pointer; }
</style>
<div class="chat-app">
  <div class="chat-header"><div id="chat-status" class="chat-status"></div><span>Secure Channel</span></div>
  <div id="messages" class="chat-messages"></div>
  <form id="input-form" class="chat-input-area" enctype="multipart/form-data">
    <input type="file" id="file-input" name="file" hidden>
    <label for="file-input" class="send-btn" title="Attach">+</label>
    <input type="text" name="content" class="chat-input" placeholder="Type a message..." autocomplete="off">
    <button type="submit" class="send-btn" title="Send">&#10148;</button>
  </form>
</div>
"""
